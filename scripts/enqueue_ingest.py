from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from kbingest.core.config import get_settings
from kbingest.core.errors import PayloadValidationError, ShutdownRequestedError
from kbingest.core.logging import configure_logging
from kbingest.domain.jobs import IngestDocument, IngestPayload
from kbingest.services.ingest.runtime import IngestRuntime


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Enqueue an ingestion job for a workspace")
    parser.add_argument("--workspace", required=True, help="Workspace identifier")
    parser.add_argument("--ingestion-id", default=None, help="Idempotency key; generated when omitted")
    parser.add_argument("--priority", type=int, default=None, help="Lower runs sooner")
    parser.add_argument("--delay-ms", type=int, default=None, help="Defer first delivery")
    parser.add_argument("files", nargs="+", help="Text files, one document each")
    return parser


async def _enqueue(args: argparse.Namespace) -> int:
    documents = [
        IngestDocument(title=Path(path).name, content=Path(path).read_text(encoding="utf-8"))
        for path in args.files
    ]
    fields = {"workspace_id": args.workspace, "documents": documents}
    if args.ingestion_id:
        fields["ingestion_id"] = args.ingestion_id
    payload = IngestPayload(**fields)
    async with IngestRuntime(get_settings()) as runtime:
        runtime.install_signal_handlers()
        try:
            job_id = await runtime.run_until_shutdown(
                runtime.queue.enqueue_ingest(payload, priority=args.priority, delay_ms=args.delay_ms)
            )
        except PayloadValidationError as exc:
            print(f"invalid_payload {exc}", file=sys.stderr)
            return 1
        except ShutdownRequestedError:
            print("enqueue_interrupted", file=sys.stderr)
            return 130
    print(json.dumps({"job_id": job_id, "ingestion_id": payload.ingestion_id}))
    return 0


def main() -> None:
    configure_logging()
    sys.exit(asyncio.run(_enqueue(_build_parser().parse_args())))


if __name__ == "__main__":
    main()
