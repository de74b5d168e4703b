"""Run Freshservice sync jobs from the command line.

Usage examples:

    python scripts/run_sync.py sync --kind incremental
    python scripts/run_sync.py sync --kind full --force-enrichment
    python scripts/run_sync.py sync --kind scoped_range --start 2026-10-05 --end 2026-10-11
    python scripts/run_sync.py backfill --days 60 --limit 200 --all
    python scripts/run_sync.py test-connection
"""

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import json
import sys
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]
sys.path.append(str(BASE_DIR))

from helpdesk_sync.core.config import settings  # noqa: E402
from helpdesk_sync.core.exceptions import HelpdeskSyncException  # noqa: E402
from helpdesk_sync.core.logging import setup_logging  # noqa: E402
from helpdesk_sync.integrations.freshservice.service import SyncOrchestrator  # noqa: E402
from helpdesk_sync.models.enums import SyncKind  # noqa: E402


def _date(value: str) -> dt.date:
    try:
        return dt.date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Freshservice -> database sync")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Run one sync")
    sync.add_argument("--kind", choices=[kind.value for kind in SyncKind], default=SyncKind.incremental.value)
    sync.add_argument("--start", type=_date, help="First day of a scoped_range sync (UTC)")
    sync.add_argument("--end", type=_date, help="Last day of a scoped_range sync (UTC)")
    sync.add_argument("--force-enrichment", action="store_true", help="Re-analyze activities of already enriched tickets")
    sync.add_argument("--concurrency", type=int, default=None, help="Parallel activity requests per chunk")

    backfill = sub.add_parser("backfill", help="Backfill pickup times for assigned tickets")
    backfill.add_argument("--days", type=int, default=30, help="Only tickets created in the last N days")
    backfill.add_argument("--limit", type=int, default=100, help="Tickets per batch")
    backfill.add_argument("--all", action="store_true", dest="process_all", help="Keep going until nothing is left")
    backfill.add_argument("--concurrency", type=int, default=5, help="Parallel activity requests per chunk")

    sub.add_parser("test-connection", help="Check Freshservice credentials and rate limit headers")
    return parser.parse_args(argv)


async def _main(args: argparse.Namespace) -> int:
    orchestrator = SyncOrchestrator()

    if args.command == "sync":
        summary = await orchestrator.trigger_sync(
            args.kind,
            start=args.start,
            end=args.end,
            force_enrichment=args.force_enrichment,
            concurrency=args.concurrency,
        )
        print(json.dumps(summary.model_dump(mode="json"), indent=2))
        return 0 if summary.status == "completed" else 1

    if args.command == "backfill":
        result = await orchestrator.backfill_pickup_times(
            limit=args.limit,
            days_to_sync=args.days,
            process_all=args.process_all,
            concurrency=args.concurrency,
        )
        print(json.dumps(result.model_dump(mode="json"), indent=2))
        return 0 if result.status == "completed" else 1

    status = await orchestrator.test_connection()
    print(json.dumps(status.model_dump(mode="json"), indent=2))
    return 0 if status.connected else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(settings.LOG_LEVEL)
    try:
        return asyncio.run(_main(args))
    except ValueError as exc:
        print(f"Invalid arguments: {exc}", file=sys.stderr)
        return 2
    except HelpdeskSyncException as exc:
        print(f"Sync failed: {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
