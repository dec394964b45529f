from __future__ import annotations

import logging

from pydantic import ValidationError

from kbingest.domain.jobs import DeadLetterEntry, FailureEvent, FailureMetadata, IngestPayload
from kbingest.services.ingest.classifier import classify_failure
from kbingest.services.ingest.dead_letters import DeadLetterStore, dead_letter_id
from kbingest.services.ingest.events import FailureEventBus, FailureSubscription
from kbingest.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

FAILURE_COUNTER = "ingest_job_failures_total"


class FailureRouter:
    """Promotes jobs that exhausted their attempt budget into the dead letter store."""

    def __init__(self, dead_letters: DeadLetterStore) -> None:
        self._dead_letters = dead_letters
        self._subscription: FailureSubscription | None = None

    async def start(self, bus: FailureEventBus, *, consumer: str | None = None) -> FailureSubscription:
        self._subscription = await bus.subscribe(self.handle, consumer=consumer)
        return self._subscription

    async def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.cancel()

    async def handle(self, event: FailureEvent) -> bool:
        """Count every failure; write a DLQ entry only for the final one.

        Returns True when a new entry was written. Never raises.
        """
        reason = classify_failure(event.failed_reason)
        final = event.is_final
        increment_counter(FAILURE_COUNTER, labels={"reason": reason.value, "final": str(final).lower()})
        if not final:
            # The queue runtime already scheduled the next attempt.
            return False

        raw_payload = None
        try:
            payload = IngestPayload.model_validate(event.payload)
        except ValidationError:
            # Keep the original body on the entry so an operator can still recover it.
            logger.warning("dlq_payload_invalid job_id=%s; storing raw payload", event.job_id, exc_info=True)
            raw_payload = dict(event.payload)
            payload = IngestPayload.model_construct(
                workspace_id=str(event.payload.get("workspaceId") or event.payload.get("workspace_id") or "unknown"),
                documents=[],
                ingestion_id=str(event.payload.get("ingestionId") or event.payload.get("ingestion_id") or ""),
                source_metadata=None,
            )
        entry = DeadLetterEntry(
            **payload.model_dump(),
            id=dead_letter_id(event.job_id),
            raw_payload=raw_payload,
            failure_metadata=FailureMetadata(
                original_job_id=event.job_id,
                failed_reason=event.failed_reason,
                failure_category=reason,
                attempts_made=event.attempts_made,
                failed_at=event.failed_at,
            ),
        )
        try:
            created = await self._dead_letters.add(entry)
        except Exception:  # noqa: BLE001 - a failed DLQ write is logged, never raised
            logger.exception("dlq_write_failed job_id=%s reason=%s", event.job_id, reason.value)
            return False
        if not created:
            logger.info("dlq_entry_exists job_id=%s entry_id=%s", event.job_id, entry.id)
            return False
        logger.error(
            "dlq_entry_written job_id=%s entry_id=%s workspace_id=%s reason=%s attempts=%s",
            event.job_id,
            entry.id,
            entry.workspace_id,
            reason.value,
            event.attempts_made,
        )
        return True
