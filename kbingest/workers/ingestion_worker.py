from __future__ import annotations

import logging
from typing import Any

from arq.connections import RedisSettings

from kbingest.core.config import get_settings
from kbingest.core.logging import configure_logging
from kbingest.domain.jobs import IngestPayload
from kbingest.services.ingest.runtime import IngestRuntime


logger = logging.getLogger(__name__)


async def ingest(ctx, payload: dict, options: dict | None = None) -> dict[str, Any]:
    # Retry, backoff and failure notification are handled by the queue wrapper.
    runtime: IngestRuntime = ctx["runtime"]

    async def _process(job_payload: IngestPayload, job_id: str) -> dict[str, Any]:
        result = await runtime.pipeline.process(job_payload, job_id=job_id)
        return result.to_wire()

    return await runtime.queue.run_job(ctx, payload, options, _process)


async def _startup(ctx) -> None:
    # Reuse arq's pool so the worker holds one Redis connection set.
    configure_logging()
    runtime = IngestRuntime(get_settings(), redis=ctx["redis"])
    await runtime.open()
    await runtime.start_background()
    ctx["runtime"] = runtime
    logger.info("ingest_worker_started queue=%s", runtime.settings.ingest_queue_name)


async def _shutdown(ctx) -> None:
    runtime: IngestRuntime | None = ctx.get("runtime")
    if runtime is not None:
        await runtime.close()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.ingest_queue_name
    # Per-job budgets are enforced in the wrapper; this is only the hard ceiling.
    max_tries = settings.ingest_max_attempts_limit
    max_jobs = settings.ingest_worker_concurrency
    # The wrapper times out first; arq's cancel is only a backstop and bypasses retries.
    job_timeout = settings.ingest_job_timeout_s + settings.ingest_job_timeout_grace_s
    keep_result = settings.ingest_keep_result_s
    functions = [ingest]
    on_startup = _startup
    on_shutdown = _shutdown
