"""
Command-line entry point: ``avalanche-watch``.

Commands:
    sync            --lang de           run one live sync cycle
    import-history  --days 30 --lang de back-fill midday bulletins
    send-reminders                      queue reminders due this minute
    test-connection                     check the live bulletin is available
    init-db                             create tables
    schedule                            run the periodic scheduler until Ctrl-C

Exit status is 0 on success and 1 on failure.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from avalanche_watch.app.core.config import settings
from avalanche_watch.app.core.database import init_db
from avalanche_watch.app.core.errors import AvalancheWatchError
from avalanche_watch.app.core.logging_config import setup_logging

logger = logging.getLogger(__name__)


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_sync(args: argparse.Namespace) -> int:
    from avalanche_watch.app.services import get_sync_service

    result = get_sync_service().run_sync(args.lang)
    _print(result.to_dict())
    if result.changes_detected:
        logger.warning("%d location(s) changed danger level", result.changes_detected)
    return 0 if result.success else 1


def cmd_import_history(args: argparse.Namespace) -> int:
    from avalanche_watch.app.services import get_sync_service

    report = get_sync_service().import_history(args.days, args.lang)
    _print(report.to_dict())
    if report.failed:
        logger.warning("Some days failed to import. Check logs for details.")
    return 0 if report.success else 1


def cmd_send_reminders(args: argparse.Namespace) -> int:
    from avalanche_watch.app.services import get_alert_service

    queued = get_alert_service().dispatch_due_reminders()
    _print({"queued": queued})
    return 0


def cmd_test_connection(args: argparse.Namespace) -> int:
    from avalanche_watch.app.services import get_bulletin_client

    ok = get_bulletin_client().test_connection()
    _print({"bulletin_provider": settings.BULLETIN_API_BASE_URL, "available": ok})
    return 0 if ok else 1


def cmd_init_db(args: argparse.Namespace) -> int:
    init_db()
    return 0


def cmd_schedule(args: argparse.Namespace) -> int:
    from avalanche_watch.app.sync.scheduler import get_scheduler

    async def _run() -> None:
        runner = get_scheduler()
        await runner.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await runner.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="avalanche-watch",
        description="Avalanche bulletin ingestion and danger notifications",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sync", help="Sync the latest bulletin")
    p.add_argument("--lang", default=settings.DEFAULT_LANGUAGE, choices=settings.SUPPORTED_LANGUAGES)
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("import-history", help="Import bulletins for the last N days")
    p.add_argument("--days", type=int, default=30)
    p.add_argument("--lang", default=settings.DEFAULT_LANGUAGE, choices=settings.SUPPORTED_LANGUAGES)
    p.set_defaults(func=cmd_import_history)

    p = sub.add_parser("send-reminders", help="Queue daily reminders due now")
    p.set_defaults(func=cmd_send_reminders)

    p = sub.add_parser("test-connection", help="Check the bulletin provider is reachable")
    p.set_defaults(func=cmd_test_connection)

    p = sub.add_parser("init-db", help="Create database tables")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("schedule", help="Run sync and reminders on a schedule")
    p.set_defaults(func=cmd_schedule)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    if args.command != "schedule":
        # One-shot commands deliver notifications before exiting
        from avalanche_watch.app.services import get_dispatch_worker

        get_dispatch_worker(inline=True)

    try:
        return args.func(args)
    except AvalancheWatchError as e:
        logger.error("%s: %s", e.error_code, e.message)
        return 1
    finally:
        from avalanche_watch.app.services import shutdown_services

        shutdown_services()


if __name__ == "__main__":
    sys.exit(main())
