#!/usr/bin/env python3
"""
Operator CLI for the fortune batch jobs.

Reads settings from --config (or $FORTUNE_BATCH_CONFIG) plus
FORTUNE_BATCH_* environment variables.

Usage:
    python3 scripts/fortune_batch_cli.py [--config FILE] <command> [options]

Examples:
    # Create tables
    python3 scripts/fortune_batch_cli.py init-db

    # Generate day pillars for the next 60 days
    python3 scripts/fortune_batch_cli.py generate-calendar --days 60

    # Force-refresh every active user's fortune for a given day
    python3 scripts/fortune_batch_cli.py refresh-fortunes --force --date 2025-04-01

    # Latest failed calendar runs
    python3 scripts/fortune_batch_cli.py runs --job-type calendar-generator --status failed

    # Change the daily refresh time (takes effect on next `serve`)
    python3 scripts/fortune_batch_cli.py settings set 04:30

    # Run the scheduler until interrupted
    python3 scripts/fortune_batch_cli.py serve
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from datetime import date
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from fortune_kernel.db.engine import create_tables
from fortune_kernel.exceptions import FortuneKernelError
from fortune_kernel.logging_config import configure_logging, get_logger

from fortune_batch.config import load_settings
from fortune_batch.domain.types import JobRunStatus, JobType
from fortune_batch.orchestrator import FortuneBatchOrchestrator

logger = get_logger("batch.cli")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run and inspect fortune batch jobs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML settings file (default: $FORTUNE_BATCH_CONFIG, else built-in defaults).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create all tables.")

    gen = sub.add_parser("generate-calendar", help="Generate day pillars now.")
    gen.add_argument(
        "--days", type=int, default=None,
        help="Number of days from today (default: calendar_days setting).",
    )

    ref = sub.add_parser("refresh-fortunes", help="Refresh daily fortunes now.")
    ref.add_argument("--force", action="store_true", help="Overwrite existing fortunes.")
    ref.add_argument(
        "--date", type=date.fromisoformat, default=None,
        help="Target date (YYYY-MM-DD). Default: today in the configured zone.",
    )
    ref.add_argument(
        "--page-size", type=int, default=None,
        help="Users per page (default: fortune_page_size setting).",
    )

    runs = sub.add_parser("runs", help="List batch run records, newest first.")
    runs.add_argument("--job-type", choices=[t.value for t in JobType], default=None)
    runs.add_argument("--status", choices=[s.value for s in JobRunStatus], default=None)
    runs.add_argument("--page", type=int, default=1)
    runs.add_argument("--limit", type=int, default=20)

    st = sub.add_parser("settings", help="Read or change the fortune refresh time.")
    st_sub = st.add_subparsers(dest="settings_command", required=True)
    st_sub.add_parser("get", help="Print the stored fortune_update_time.")
    st_set = st_sub.add_parser("set", help="Store a new fortune_update_time (HH:MM).")
    st_set.add_argument("value")
    st_set.add_argument("--by", default="cli", help="Actor recorded as updated_by.")

    sub.add_parser("serve", help="Start the scheduler and run until interrupted.")

    return parser.parse_args(argv)


def _print_json(data: object) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


async def _serve(orchestrator: FortuneBatchOrchestrator) -> None:
    scheduler = orchestrator.create_scheduler()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    installed = scheduler.start()
    _print_json({"scheduled": installed})
    await stop.wait()

    scheduler.stop()
    logger.info("waiting_for_in_flight_runs")
    await scheduler.wait_idle()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    try:
        settings = load_settings(args.config)
    except FortuneKernelError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    configure_logging(level=settings.log_level)

    try:
        orchestrator = FortuneBatchOrchestrator.from_settings(settings)

        if args.command == "init-db":
            create_tables()
            print("Tables created.")
            return 0

        if args.command == "generate-calendar":
            days = args.days if args.days is not None else settings.calendar_days
            result = asyncio.run(orchestrator.calendar_generator.generate(days, requested_by="cli"))
            _print_json(result.to_dict())
            return 0 if result.success else 1

        if args.command == "refresh-fortunes":
            if orchestrator.fortune_job is None:
                print("ERROR: no fortune_service configured", file=sys.stderr)
                return 1
            result = asyncio.run(orchestrator.fortune_job.refresh(
                force_update=args.force,
                target_date=args.date,
                page_size=args.page_size or settings.fortune_page_size,
                max_concurrent=settings.fortune_max_concurrent,
                requested_by="cli",
            ))
            _print_json(result.to_dict())
            return 0 if result.success else 1

        if args.command == "runs":
            page = orchestrator.job_runs.list_runs(
                job_type=JobType(args.job_type) if args.job_type else None,
                status=JobRunStatus(args.status) if args.status else None,
                page=args.page,
                limit=args.limit,
            )
            _print_json({
                "items": [
                    {
                        "run_id": run.run_id,
                        "job_type": run.job_type.value,
                        "status": run.status.value,
                        "start_time": run.start_time,
                        "end_time": run.end_time,
                        "processed_items": run.processed_items,
                        "error_items": run.error_items,
                        "scheduled_by": run.scheduled_by,
                    }
                    for run in page.items
                ],
                "total": page.total,
                "page": page.page,
                "limit": page.limit,
                "pages": page.pages,
            })
            return 0

        if args.command == "settings":
            store = orchestrator.settings_store
            if args.settings_command == "get":
                print(store.get_fortune_update_time())
            else:
                store.set_fortune_update_time(args.value, updated_by=args.by)
                print(f"fortune_update_time = {args.value}")
            return 0

        if args.command == "serve":
            asyncio.run(_serve(orchestrator))
            return 0

    except FortuneKernelError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    return 1


if __name__ == "__main__":
    sys.exit(main())
