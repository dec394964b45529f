from __future__ import annotations

import argparse
import asyncio
import json
import sys

from kbingest.core.config import get_settings
from kbingest.core.errors import ShutdownRequestedError
from kbingest.core.logging import configure_logging
from kbingest.services.ingest.runtime import IngestRuntime
from kbingest.services.telemetry import render_prometheus


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Inspect and recover the ingestion dead letter queue")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("stats", help="Show DLQ statistics")
    list_cmd = sub.add_parser("list", help="List DLQ entries")
    list_cmd.add_argument("limit", nargs="?", type=int, default=settings.dlq_list_default_limit)
    list_cmd.add_argument("--offset", type=int, default=0)
    inspect_cmd = sub.add_parser("inspect", help="Show one DLQ entry")
    inspect_cmd.add_argument("job_id")
    retry_cmd = sub.add_parser("retry", help="Re-enqueue one DLQ entry")
    retry_cmd.add_argument("job_id")
    retry_all_cmd = sub.add_parser("retry-all", help="Re-enqueue up to LIMIT DLQ entries")
    retry_all_cmd.add_argument("limit", nargs="?", type=int, default=settings.dlq_retry_all_default_max)
    purge_cmd = sub.add_parser("purge", help="Remove entries older than DAYS days")
    purge_cmd.add_argument("days", nargs="?", type=float, default=settings.dlq_purge_default_days)
    sub.add_parser("metrics", help="Poll queue depths once and print them in Prometheus format")
    return parser


def _print_json(value: object) -> None:
    print(json.dumps(value, indent=2, sort_keys=True, default=str))


async def _dispatch(runtime: IngestRuntime, args: argparse.Namespace) -> int:
    dlq = runtime.dlq
    if args.command == "stats":
        _print_json((await dlq.stats()).to_wire())
        return 0
    if args.command == "list":
        entries = await dlq.list(args.limit, offset=args.offset)
        if not entries:
            print("dlq_empty")
        for entry in entries:
            meta = entry.failure_metadata
            print(
                f"{entry.id} workspace={entry.workspace_id} ingestion={entry.ingestion_id} "
                f"reason={meta.failure_category.value} attempts={meta.attempts_made} "
                f"failed_at={meta.failed_at.isoformat()}"
            )
        return 0
    if args.command == "inspect":
        entry = await dlq.inspect(args.job_id)
        if entry is None:
            print(f"dlq_entry_not_found job_id={args.job_id}", file=sys.stderr)
            return 1
        _print_json(entry.to_wire())
        return 0
    if args.command == "retry":
        result = await dlq.retry(args.job_id)
        if not result.success:
            print(f"dlq_retry_failed job_id={args.job_id}", file=sys.stderr)
            return 1
        print(f"dlq_retry_ok job_id={args.job_id} new_job_id={result.new_job_id}")
        return 0
    if args.command == "retry-all":
        _print_json((await dlq.retry_all(args.limit)).to_wire())
        return 0
    if args.command == "purge":
        purged = await dlq.purge(args.days)
        print(f"dlq_purged={purged}")
        return 0
    if args.command == "metrics":
        await runtime.metrics.poll_once()
        sys.stdout.write(render_prometheus())
        return 0
    return 1


async def _run(args: argparse.Namespace) -> int:
    async with IngestRuntime(get_settings()) as runtime:
        runtime.install_signal_handlers()
        try:
            return await runtime.run_until_shutdown(_dispatch(runtime, args))
        except ShutdownRequestedError:
            print(f"dlq_cli_interrupted command={args.command}", file=sys.stderr)
            return 130


def main() -> None:
    configure_logging()
    args = _build_parser().parse_args()
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
