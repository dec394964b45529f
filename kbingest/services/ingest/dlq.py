from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from kbingest.core.config import Settings
from kbingest.core.errors import PayloadValidationError
from kbingest.domain.jobs import (
    INGEST_JOB_TYPE,
    DeadLetterEntry,
    DLQStats,
    IngestPayload,
    RetryAllResult,
    RetryResult,
    strip_dlq_metadata,
)
from kbingest.services.ingest.classifier import classify_failure
from kbingest.services.ingest.dead_letters import DeadLetterStore
from kbingest.services.ingest.queue import JobQueue, validate_ingest_payload


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DLQManager:
    """Operator surface over the dead letter store: stats, listing, retry and purge.

    Expected failures (missing entry, unrebuildable payload, failed re-enqueue) come back as
    ``RetryResult(success=False)``; store outages propagate.
    """

    def __init__(self, store: DeadLetterStore, queue: JobQueue, settings: Settings) -> None:
        self._store = store
        self._queue = queue
        self._settings = settings

    async def stats(self, *, page_size: int | None = None) -> DLQStats:
        # The histogram covers at most one page; `stored` reports the real size.
        bound = max(1, int(page_size or self._settings.dlq_stats_page_size))
        entries = await self._store.page(limit=bound)
        counts = await self._store.counts()
        failures = Counter(self._category(entry) for entry in entries)
        return DLQStats(
            total=len(entries),
            stored=counts.waiting,
            truncated=counts.waiting > len(entries),
            waiting=counts.waiting,
            active=counts.active,
            completed=counts.completed,
            failures_by_reason=dict(failures),
        )

    async def list(self, limit: int | None = None, *, offset: int = 0) -> list[DeadLetterEntry]:
        size = self._settings.dlq_list_default_limit if limit is None else limit
        return await self._store.page(offset=max(0, offset), limit=max(0, int(size)))

    async def inspect(self, job_id: str) -> DeadLetterEntry | None:
        return await self._store.get(job_id)

    async def retry(self, job_id: str) -> RetryResult:
        entry = await self._store.get(job_id)
        if entry is None:
            logger.warning("dlq_entry_not_found entry_id=%s", job_id)
            return RetryResult(success=False)

        # Refuse before claiming: an entry we cannot rebuild must stay inspectable.
        try:
            payload = IngestPayload.model_validate(strip_dlq_metadata(entry.model_dump(by_alias=True)))
            validate_ingest_payload(payload, self._settings)
        except (ValidationError, PayloadValidationError) as exc:
            logger.warning("dlq_entry_not_retryable entry_id=%s error=%s", job_id, exc)
            return RetryResult(success=False)
        # Claim by deleting first: of two concurrent retries only one wins the delete.
        if not await self._store.remove(job_id):
            logger.info("dlq_entry_claimed_elsewhere entry_id=%s", job_id)
            return RetryResult(success=False)
        try:
            new_job_id = await self._queue.enqueue(
                INGEST_JOB_TYPE,
                payload,
                priority=self._settings.dlq_retry_priority,
            )
        except Exception:  # noqa: BLE001 - report failure and put the entry back
            logger.exception("dlq_retry_enqueue_failed entry_id=%s", job_id)
            await self._store.restore(entry)
            return RetryResult(success=False)

        logger.info(
            "dlq_entry_requeued entry_id=%s new_job_id=%s workspace_id=%s",
            job_id,
            new_job_id,
            payload.workspace_id,
        )
        return RetryResult(success=True, new_job_id=new_job_id)

    async def retry_all(self, max_jobs: int | None = None) -> RetryAllResult:
        """Retry up to ``max_jobs`` entries one at a time with a fixed pause between them.

        Runs to completion once started; individual failures only bump the counters.
        """
        limit = self._settings.dlq_retry_all_default_max if max_jobs is None else max_jobs
        entries = await self._store.page(limit=max(0, int(limit)))
        delay_s = max(0, self._settings.dlq_retry_all_delay_ms) / 1000.0
        result = RetryAllResult(attempted=len(entries))
        logger.info("dlq_bulk_retry_started entries=%s", len(entries))
        for index, entry in enumerate(entries):
            outcome = await self.retry(entry.id)
            if outcome.success:
                result.succeeded += 1
            else:
                result.failed += 1
            if delay_s and index < len(entries) - 1:
                await asyncio.sleep(delay_s)
        logger.info(
            "dlq_bulk_retry_completed attempted=%s succeeded=%s failed=%s",
            result.attempted,
            result.succeeded,
            result.failed,
        )
        return result

    async def purge(self, older_than_days: float | None = None, *, now: datetime | None = None) -> int:
        days = self._settings.dlq_purge_default_days if older_than_days is None else older_than_days
        cutoff = (now or _utc_now()) - timedelta(days=days)
        purged = 0
        for entry_id in await self._store.ids_older_than(cutoff):
            if await self._store.remove(entry_id):
                purged += 1
        logger.info("dlq_entries_purged purged=%s older_than_days=%s", purged, days)
        return purged

    @staticmethod
    def _category(entry: DeadLetterEntry) -> str:
        # Entries written before categories were stored are classified on read.
        category = entry.failure_metadata.failure_category
        if category.value == "unknown":
            category = classify_failure(entry.failure_metadata.failed_reason)
        return category.value
