"""
test_alert_rules.py — Change-alert matching, reminder scheduling and the
alert service hand-off to the dispatch worker.

Run with:
    pytest tests/test_alert_rules.py -v
"""

from __future__ import annotations

from datetime import datetime, time, timezone

from avalanche_watch.app.alerts import messages
from avalanche_watch.app.alerts.models import ChangeAlertJob, ChangeEvent, ReminderJob
from avalanche_watch.app.alerts.rules import RuleEngine, is_reminder_due, should_trigger, to_local
from avalanche_watch.app.alerts.service import AlertService
from avalanche_watch.app.storage.models import AlertRule, MonitoredLocation, Subscriber


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _make_rule(**overrides) -> AlertRule:
    fields = dict(
        subscriber_id=1,
        location_id=None,
        on_increase=True,
        on_decrease=False,
        min_danger_level=None,
        max_danger_level=None,
        reminder_enabled=False,
        reminder_time=None,
        active_days=[],
        is_active=True,
    )
    fields.update(overrides)
    return AlertRule(**fields)


def _make_subscriber(enabled: bool = True, token: str = "device-token-1") -> Subscriber:
    return Subscriber(name="Anna", device_token=token, notifications_enabled=enabled)


def _change(old: int = 2, new: int = 3, location_id: int = 1) -> ChangeEvent:
    return ChangeEvent(location_id=location_id, location_name="Jakobshorn", old_level=old, new_level=new)


class _RecordingWorker:
    def __init__(self):
        self.jobs = []

    def submit(self, job):
        self.jobs.append(job)


def _seed(session_factory):
    """Two subscribers, one location, a mix of rules. Returns their ids."""
    with session_factory() as session:
        location = MonitoredLocation(name="Jakobshorn", slug="jakobshorn", latitude=46.8,
                                     longitude=9.8, elevation_min=1500, elevation_max=2500)
        other = MonitoredLocation(name="Madrisa", slug="madrisa", latitude=46.8,
                                  longitude=10.0, elevation_min=1100, elevation_max=2600)
        anna = Subscriber(name="Anna", device_token="tok-anna", notifications_enabled=True)
        ben = Subscriber(name="Ben", device_token="tok-ben", notifications_enabled=False)
        session.add_all([location, other, anna, ben])
        session.flush()

        session.add_all([
            # Global increase rule
            AlertRule(subscriber_id=anna.id, on_increase=True),
            # Scoped to the other location
            AlertRule(subscriber_id=anna.id, location_id=other.id, on_increase=True),
            # Inactive
            AlertRule(subscriber_id=anna.id, location_id=location.id, is_active=False),
            # Subscriber has notifications off
            AlertRule(subscriber_id=ben.id, location_id=location.id, on_increase=True),
            # Reminder at 07:30 on weekdays
            AlertRule(subscriber_id=anna.id, location_id=location.id, on_increase=False,
                      reminder_enabled=True, reminder_time=time(7, 30),
                      active_days=["monday", "tuesday", "wednesday", "thursday", "friday"]),
        ])
        session.commit()
        return {"location": location.id, "other": other.id, "anna": anna.id, "ben": ben.id}


# ═══════════════════════════════════════════════════════════════════════════
# Change matching
# ═══════════════════════════════════════════════════════════════════════════

class TestShouldTrigger:
    def test_increase_matches_default_rule(self):
        assert should_trigger(_make_rule(), _make_subscriber(), _change(2, 3)) is True

    def test_decrease_needs_opt_in(self):
        assert should_trigger(_make_rule(), _make_subscriber(), _change(3, 2)) is False
        assert should_trigger(_make_rule(on_decrease=True), _make_subscriber(), _change(3, 2)) is True

    def test_increase_can_be_disabled(self):
        rule = _make_rule(on_increase=False, on_decrease=True)
        assert should_trigger(rule, _make_subscriber(), _change(2, 3)) is False

    def test_equal_levels_never_match(self):
        rule = _make_rule(on_decrease=True)
        assert should_trigger(rule, _make_subscriber(), _change(3, 3)) is False

    def test_notifications_disabled(self):
        assert should_trigger(_make_rule(), _make_subscriber(enabled=False), _change()) is False

    def test_location_scope(self):
        rule = _make_rule(location_id=7)
        assert should_trigger(rule, _make_subscriber(), _change(location_id=7)) is True
        assert should_trigger(rule, _make_subscriber(), _change(location_id=8)) is False

    def test_min_threshold_on_new_level(self):
        rule = _make_rule(min_danger_level=3)
        assert should_trigger(rule, _make_subscriber(), _change(1, 2)) is False
        assert should_trigger(rule, _make_subscriber(), _change(2, 3)) is True

    def test_max_threshold_on_new_level(self):
        rule = _make_rule(max_danger_level=3)
        assert should_trigger(rule, _make_subscriber(), _change(3, 4)) is False
        assert should_trigger(rule, _make_subscriber(), _change(2, 3)) is True


# ═══════════════════════════════════════════════════════════════════════════
# Reminders
# ═══════════════════════════════════════════════════════════════════════════

class TestReminderDue:
    MONDAY_0730 = datetime(2025, 1, 20, 7, 30, 45)

    def test_due_on_exact_minute(self):
        rule = _make_rule(reminder_enabled=True, reminder_time=time(7, 30))
        assert is_reminder_due(rule, self.MONDAY_0730) is True

    def test_not_due_other_minute(self):
        rule = _make_rule(reminder_enabled=True, reminder_time=time(7, 31))
        assert is_reminder_due(rule, self.MONDAY_0730) is False

    def test_active_days_filter(self):
        rule = _make_rule(reminder_enabled=True, reminder_time=time(7, 30), active_days=["Saturday"])
        assert is_reminder_due(rule, self.MONDAY_0730) is False
        assert is_reminder_due(rule, datetime(2025, 1, 25, 7, 30)) is True

    def test_disabled_or_inactive(self):
        assert is_reminder_due(_make_rule(reminder_time=time(7, 30)), self.MONDAY_0730) is False
        rule = _make_rule(reminder_enabled=True, reminder_time=time(7, 30), is_active=False)
        assert is_reminder_due(rule, self.MONDAY_0730) is False

    def test_to_local_converts_aware(self):
        local = to_local(datetime(2025, 1, 20, 6, 30, tzinfo=timezone.utc), "Europe/Zurich")
        assert (local.hour, local.minute) == (7, 30)

    def test_to_local_keeps_naive(self):
        naive = datetime(2025, 1, 20, 7, 30)
        assert to_local(naive) is naive


# ═══════════════════════════════════════════════════════════════════════════
# Engine & service
# ═══════════════════════════════════════════════════════════════════════════

class TestRuleEngine:
    def test_evaluate_changes(self, session_factory):
        ids = _seed(session_factory)
        with session_factory() as session:
            matched = RuleEngine().evaluate_changes(session, [_change(2, 3, ids["location"])])
        assert len(matched) == 1
        assert matched[0].subscriber_id == ids["anna"]

    def test_due_reminders(self, session_factory):
        _seed(session_factory)
        engine = RuleEngine("Europe/Zurich")
        with session_factory() as session:
            due = engine.due_reminders(session, datetime(2025, 1, 20, 6, 30, tzinfo=timezone.utc))
            saturday = engine.due_reminders(session, datetime(2025, 1, 25, 6, 30, tzinfo=timezone.utc))
        assert len(due) == 1
        assert saturday == []


class TestAlertService:
    def test_changes_become_jobs(self, session_factory):
        ids = _seed(session_factory)
        worker = _RecordingWorker()
        service = AlertService(worker, session_factory=session_factory)

        queued = service.evaluate_changes_and_notify([_change(2, 4, ids["location"])])

        assert queued == 1
        job = worker.jobs[0]
        assert isinstance(job, ChangeAlertJob)
        assert job.location_id == ids["location"]
        assert job.change.new_level == 4

    def test_no_changes(self, session_factory):
        worker = _RecordingWorker()
        assert AlertService(worker, session_factory=session_factory).evaluate_changes_and_notify([]) == 0
        assert worker.jobs == []

    def test_reminders_become_jobs(self, session_factory):
        ids = _seed(session_factory)
        worker = _RecordingWorker()
        service = AlertService(worker, RuleEngine("Europe/Zurich"), session_factory=session_factory)
        now = datetime(2025, 1, 20, 6, 30, 5, tzinfo=timezone.utc)

        assert service.dispatch_due_reminders(now) == 1
        job = worker.jobs[0]
        assert isinstance(job, ReminderJob)
        assert job.location_id == ids["location"]
        assert job.scheduled_for == now

    def test_reminders_stateless_within_minute(self, session_factory):
        _seed(session_factory)
        worker = _RecordingWorker()
        service = AlertService(worker, RuleEngine("Europe/Zurich"), session_factory=session_factory)
        now = datetime(2025, 1, 20, 6, 30, tzinfo=timezone.utc)
        assert service.dispatch_due_reminders(now) == service.dispatch_due_reminders(now) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Message templates
# ═══════════════════════════════════════════════════════════════════════════

class TestMessages:
    def test_increase(self):
        msg = messages.change_message(_change(2, 3), rule_id=5, location_slug="jakobshorn")
        assert msg.title == "Avalanche Alert: Jakobshorn"
        assert msg.body == "Danger level increased from 2 to 3 ↗"
        assert msg.data["type"] == "alert"
        assert msg.data["alert_rule_id"] == 5

    def test_decrease(self):
        assert messages.change_message(_change(4, 2)).body == "Danger level decreased from 4 to 2 ↘"

    def test_reminder_with_level(self):
        msg = messages.reminder_message(rule_id=1, location_name="Jakobshorn", current_level=5)
        assert msg.title == "Daily Avalanche Update"
        assert msg.body == "Jakobshorn: Current danger level 5 (very high)"

    def test_reminder_without_level(self):
        msg = messages.reminder_message(rule_id=1, location_name="Jakobshorn")
        assert msg.body == "Jakobshorn: No current danger level available"

    def test_generic_reminder(self):
        assert messages.reminder_message(rule_id=1).body == messages.GENERIC_REMINDER_BODY
