from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from arq import Retry
from arq.connections import ArqRedis
from arq.constants import in_progress_key_prefix

from kbingest.core.config import Settings
from kbingest.core.errors import PayloadValidationError, is_non_retryable
from kbingest.domain.jobs import (
    INGEST_JOB_TYPE,
    BackoffPolicy,
    FailureEvent,
    IngestPayload,
    JobOptions,
    QueueCounts,
)
from kbingest.services.ingest.events import FailureEventBus


logger = logging.getLogger(__name__)

Processor = Callable[[IngestPayload, str], Awaitable[Any]]


def _utc_now() -> datetime:
    # Use UTC timestamps for consistency across producer and worker processes.
    return datetime.now(timezone.utc)


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


def backoff_delay_ms(base_delay_ms: int, attempts_made: int) -> int:
    # Delay before the next delivery once attempt N has failed: base * 2^(N-1).
    return int(base_delay_ms) * (2 ** max(0, int(attempts_made) - 1))


def priority_head_start_ms(priority: int | None, head_start_ms: int) -> int:
    # Lower priority numbers run sooner, matching the producer-facing contract.
    if priority is None:
        return 0
    return int(head_start_ms) // max(1, int(priority))


def validate_ingest_payload(payload: IngestPayload, settings: Settings) -> None:
    # Reject payloads that can never succeed before they consume a retry budget.
    documents = payload.documents
    if not documents:
        raise PayloadValidationError("At least one document is required")
    if len(documents) > settings.max_documents_per_ingest:
        raise PayloadValidationError("Too many documents in a single ingest request")
    for index, document in enumerate(documents):
        body = document.body.strip()
        if not body:
            raise PayloadValidationError(f"Document {index}: either text or content is required")
        if len(body) > settings.max_document_chars:
            raise PayloadValidationError(f"Document {index}: text is too long")
        if document.title and len(document.title.strip()) > settings.max_title_chars:
            raise PayloadValidationError(f"Document {index}: title is too long")


def describe_failure(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


class JobQueue:
    """Producer and retry wiring for one arq queue.

    arq delivers each job to one worker at a time and tracks the attempt
    counter (``job_try``). Everything arq does not do natively lives here:
    per-job attempt budgets and backoff declared at enqueue time, priorities,
    queue counts, and a failure notification on every failed attempt.
    """

    def __init__(
        self,
        redis: ArqRedis,
        settings: Settings,
        *,
        events: FailureEventBus | None = None,
        queue_name: str | None = None,
    ) -> None:
        self._redis = redis
        self._settings = settings
        self._events = events
        self.name = queue_name or settings.ingest_queue_name

    async def enqueue(
        self,
        job_type: str,
        payload: IngestPayload,
        *,
        max_attempts: int | None = None,
        backoff_ms: int | None = None,
        priority: int | None = None,
        delay_ms: int | None = None,
        job_id: str | None = None,
    ) -> str:
        settings = self._settings
        attempts = settings.ingest_max_attempts if max_attempts is None else max_attempts
        # arq's worker-wide max_tries is the ceiling for any single job's budget.
        attempts = min(max(1, int(attempts)), settings.ingest_max_attempts_limit)
        base_delay_ms = settings.ingest_backoff_base_ms if backoff_ms is None else backoff_ms
        options = JobOptions(
            max_attempts=attempts,
            backoff=BackoffPolicy(base_delay_ms=base_delay_ms),
            priority=priority,
            delay_ms=delay_ms,
            enqueued_at=_utc_now(),
        )
        # arq orders the queue by score (ms timestamp); shift it for delay and priority.
        # A delay always wins: priority only orders jobs that are already due.
        if delay_ms:
            offset_ms = int(delay_ms)
        else:
            offset_ms = -priority_head_start_ms(priority, settings.ingest_priority_head_start_ms)
        defer_until = options.enqueued_at + timedelta(milliseconds=offset_ms) if offset_ms else None
        job_id = job_id or uuid4().hex
        job = await self._redis.enqueue_job(
            job_type,
            payload.to_wire(),
            options.to_wire(),
            _job_id=job_id,
            _queue_name=self.name,
            _defer_until=defer_until,
        )
        if job is None:
            # arq returns None when the id already exists; keep tracing with the same id.
            logger.info("ingest_job_already_enqueued job_id=%s queue=%s", job_id, self.name)
            return job_id
        logger.info(
            "ingest_job_enqueued job_id=%s queue=%s workspace_id=%s ingestion_id=%s max_attempts=%s priority=%s",
            job.job_id,
            self.name,
            payload.workspace_id,
            payload.ingestion_id,
            attempts,
            priority,
        )
        return job.job_id

    async def enqueue_ingest(
        self,
        payload: IngestPayload,
        *,
        priority: int | None = None,
        delay_ms: int | None = None,
    ) -> str:
        """Producer entry point: validate, then enqueue with the default retry policy."""
        validate_ingest_payload(payload, self._settings)
        return await self.enqueue(INGEST_JOB_TYPE, payload, priority=priority, delay_ms=delay_ms)

    async def counts(self) -> QueueCounts:
        now_ms = int(_utc_now().timestamp() * 1000)
        # Running jobs stay in the sorted set until arq finishes them.
        ready_ids = [_decode(job_id) for job_id in await self._redis.zrangebyscore(self.name, "-inf", now_ms)]
        delayed = int(await self._redis.zcount(self.name, f"({now_ms}", "+inf"))
        active = 0
        if ready_ids:
            active = int(await self._redis.exists(*[in_progress_key_prefix + job_id for job_id in ready_ids]))
        completed = 0
        failed = 0
        for result in await self._redis.all_job_results():
            if result.queue_name != self.name:
                continue
            if result.success:
                completed += 1
            else:
                failed += 1
        return QueueCounts(
            waiting=max(0, len(ready_ids) - active),
            delayed=delayed,
            active=active,
            completed=completed,
            failed=failed,
        )

    async def run_job(
        self,
        ctx: dict[str, Any],
        payload: dict[str, Any],
        options: dict[str, Any] | None,
        processor: Processor,
    ) -> Any:
        # Called from the arq job function; arq has already incremented job_try.
        job_id = _decode(ctx.get("job_id") or "")
        attempts_made = int(ctx.get("job_try") or 1)
        job_options = JobOptions.model_validate(options or {})
        try:
            ingest_payload = IngestPayload.model_validate(payload)
            # Time out here rather than in arq: arq's cancellation skips the retry wiring.
            async with asyncio.timeout(self._settings.ingest_job_timeout_s):
                return await processor(ingest_payload, job_id)
        except Exception as exc:
            terminal = self._settings.ingest_fail_fast_non_retryable and is_non_retryable(exc)
            event = FailureEvent(
                job_id=job_id,
                queue_name=self.name,
                failed_reason=describe_failure(exc),
                attempts_made=attempts_made,
                max_attempts=job_options.max_attempts,
                terminal=terminal,
                payload=payload,
            )
            await self._notify_failure(event)
            if not event.is_final:
                delay_ms = backoff_delay_ms(job_options.backoff.base_delay_ms, attempts_made)
                logger.warning(
                    "ingest_job_retry_scheduled job_id=%s attempt=%s/%s delay_ms=%s reason=%s",
                    job_id,
                    attempts_made,
                    job_options.max_attempts,
                    delay_ms,
                    event.failed_reason,
                )
                raise Retry(defer=timedelta(milliseconds=delay_ms)) from exc
            logger.error(
                "ingest_job_failed job_id=%s attempts=%s/%s terminal=%s reason=%s",
                job_id,
                attempts_made,
                job_options.max_attempts,
                terminal,
                event.failed_reason,
            )
            raise

    async def _notify_failure(self, event: FailureEvent) -> None:
        if self._events is None:
            return
        try:
            await self._events.publish(event)
        except Exception:  # noqa: BLE001 - the job's own failure must still reach arq
            logger.exception("failure_event_publish_failed job_id=%s", event.job_id)
