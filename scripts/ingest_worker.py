from __future__ import annotations

from arq.worker import run_worker

from kbingest.core.logging import configure_logging
from kbingest.workers.ingestion_worker import WorkerSettings


def main() -> None:
    # arq installs its own SIGTERM/SIGINT handlers and runs on_shutdown on exit.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
