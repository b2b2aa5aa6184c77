"""Command-line entry points for parking ticket ingestion.

Maps argparse commands onto TicketCollector and SyncScheduler calls.

Usage:
    ticket-ingest backfill pvqr-7yc4
    ticket-ingest sync all
    ticket-ingest stats
    ticket-ingest schedule --interval 30
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from typing import Sequence

from ticket_ingest.collectors.config import IngestSettings
from ticket_ingest.collectors.exceptions import IngestError
from ticket_ingest.collectors.socrata.collector import TicketCollector
from ticket_ingest.db.core import PostgresEngine, configure_logging
from ticket_ingest.scheduling.scheduler import SyncScheduler
from ticket_ingest.sources.datasets import DATASETS, resolve_datasets

logger = logging.getLogger("ticket_ingest")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ticket-ingest", description="NYC parking ticket ingester"
    )
    parser.add_argument("--env-file", default=".env", help="Optional .env file to load")
    parser.add_argument(
        "--log-level",
        default="INFO",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level (default: INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    dataset_help = f"Dataset id ({', '.join(DATASETS)}) or 'all'"
    backfill = subparsers.add_parser(
        "backfill", help="Full backfill from Socrata (ordered by :id)"
    )
    backfill.add_argument("dataset", help=dataset_help)

    sync = subparsers.add_parser(
        "sync", help="Incremental sync from last cursor (ordered by :updated_at)"
    )
    sync.add_argument("dataset", help=dataset_help)

    subparsers.add_parser("stats", help="Show table statistics")

    schedule = subparsers.add_parser("schedule", help="Sync all datasets on an interval")
    schedule.add_argument(
        "--interval", type=_positive_minutes, help="Sync interval in minutes (default: 15)"
    )
    schedule.add_argument("--once", action="store_true", help="Run once and exit")
    return parser


def _positive_minutes(value: str) -> float:
    try:
        minutes = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError("--interval must be a number") from None
    if minutes <= 0:
        raise argparse.ArgumentTypeError("--interval must be positive")
    return minutes


def main(argv: Sequence[str] | None = None) -> int:
    """Run the CLI. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = IngestSettings.from_env(args.env_file)
        datasets = resolve_datasets(args.dataset) if hasattr(args, "dataset") else []
    except IngestError as e:
        logger.error("%s", e)
        return 2

    engine = PostgresEngine(settings.database_url)
    collector = TicketCollector.from_settings(settings, engine)

    if args.command == "schedule":
        if args.interval is not None:
            settings = replace(settings, interval_minutes=args.interval)
        return _run_schedule_command(collector, engine, settings, args.once)

    try:
        if args.command == "backfill":
            for descriptor in datasets:
                _report(collector.run_backfill(descriptor.dataset_id))
        elif args.command == "sync":
            for descriptor in datasets:
                _report(collector.run_sync(descriptor.dataset_id))
        elif args.command == "stats":
            _print_stats(collector)
        return 0
    except IngestError:
        logger.exception("Fatal error")
        return 1
    finally:
        collector.close()
        engine.close()


def _run_schedule_command(
    collector: TicketCollector, engine: PostgresEngine, settings: IngestSettings, once: bool
) -> int:
    scheduler = SyncScheduler(
        collector=collector,
        engine=engine,
        interval_minutes=settings.interval_minutes,
        run_once=once,
    )
    scheduler.run()
    return 0


def _report(run) -> None:
    print(f"\n=== {run.mode.capitalize()} complete for {run.dataset_id} ===")
    print(f"Total rows fetched: {run.rows_fetched}")
    print(f"Total rows used: {run.rows_used} ({run.rows_rejected} rejected)")
    print(f"Total rows upserted: {run.rows_changed}")
    if run.cursor_advanced:
        print(f"Cursor updated to: {run.high_water_mark.isoformat()}")
    else:
        print("Cursor unchanged")


def _print_stats(collector: TicketCollector) -> None:
    stats = collector.get_stats()
    print("\n=== Parking Ticket Table Statistics ===\n")
    print(f"Total rows: {stats.total_rows:,}")
    print("\nBy dataset:")
    for dataset, count in stats.by_dataset.items():
        print(f"  {dataset}: {count:,}")


if __name__ == "__main__":
    raise SystemExit(main())
