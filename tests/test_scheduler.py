"""
test_scheduler.py — Periodic job runner: tick alignment, single-flight
ticks, failure classification and run history.

Run with:
    pytest tests/test_scheduler.py -v
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

from avalanche_watch.app.sync.scheduler import (
    REMINDER_JOB,
    SYNC_JOB,
    TICK_MARGIN_SECONDS,
    JobStatus,
    ScheduledJobRunner,
    build_default_runner,
    seconds_until_next_tick,
)


class _Result(SimpleNamespace):
    def to_dict(self):
        return dict(vars(self))


class TestNextTick:
    def test_aligned_to_interval(self):
        assert seconds_until_next_tick(1800, now=3700.0) == 1700.0 + TICK_MARGIN_SECONDS

    def test_on_boundary_waits_full_interval(self):
        assert seconds_until_next_tick(60, now=120.0) == 60.0 + TICK_MARGIN_SECONDS

    def test_wakes_past_the_minute(self):
        now = 3599.99
        woke = now + seconds_until_next_tick(60, now=now)
        assert 3600.0 < woke < 3600.1


class TestTrigger:
    def test_completed(self):
        runner = ScheduledJobRunner()
        runner.add_job("sync", 60, lambda: _Result(success=True, skipped=False))

        run = asyncio.run(runner.trigger("sync"))

        assert run.status == JobStatus.COMPLETED
        assert run.result == {"success": True, "skipped": False}
        assert run.to_dict()["elapsed_seconds"] is not None

    def test_unsuccessful_result_is_failed(self):
        runner = ScheduledJobRunner()
        runner.add_job("sync", 60, lambda: _Result(success=False, skipped=False))
        assert asyncio.run(runner.trigger("sync")).status == JobStatus.FAILED

    def test_skipped_result_is_not_failed(self):
        runner = ScheduledJobRunner()
        runner.add_job("sync", 60, lambda: _Result(success=False, skipped=True))
        assert asyncio.run(runner.trigger("sync")).status == JobStatus.COMPLETED

    def test_exception_recorded(self):
        def explode():
            raise RuntimeError("provider down")

        runner = ScheduledJobRunner()
        runner.add_job("sync", 60, explode)
        run = asyncio.run(runner.trigger("sync"))
        assert run.status == JobStatus.FAILED
        assert run.error == "provider down"

    def test_plain_return_value(self):
        runner = ScheduledJobRunner()
        runner.add_job("reminders", 60, lambda: 3)
        assert asyncio.run(runner.trigger("reminders")).result == {"value": 3}

    def test_tick_skipped_while_running(self):
        runner = ScheduledJobRunner()
        runner.add_job("sync", 60, lambda: None)
        runner._jobs["sync"].running = True
        assert asyncio.run(runner.trigger("sync")).status == JobStatus.SKIPPED


class TestLifecycle:
    def test_run_on_start_and_history(self):
        calls = []
        runner = ScheduledJobRunner()
        runner.add_job("sync", 3600, lambda: calls.append(1), run_on_start=True)
        runner.add_job("reminders", 3600, lambda: calls.append(2))

        async def scenario():
            await runner.start()
            assert runner.running is True
            await asyncio.sleep(0.1)
            await runner.stop()

        asyncio.run(scenario())

        assert calls == [1]
        assert runner.running is False
        assert [r.job_name for r in runner.history()] == ["sync"]
        assert runner.history("reminders") == []

    def test_history_most_recent_first(self):
        runner = ScheduledJobRunner()
        runner.add_job("a", 60, lambda: None)
        runner.add_job("b", 60, lambda: None)

        async def scenario():
            await runner.trigger("a")
            await runner.trigger("b")

        asyncio.run(scenario())
        assert [r.job_name for r in runner.history()] == ["b", "a"]


class TestDefaultRunner:
    def test_wiring(self):
        sync_service = SimpleNamespace(run_sync=lambda: None)
        alert_service = SimpleNamespace(dispatch_due_reminders=lambda: 0)
        runner = build_default_runner(sync_service, alert_service)
        assert runner.job_names() == [SYNC_JOB, REMINDER_JOB]
        assert runner._jobs[SYNC_JOB].run_on_start is True
