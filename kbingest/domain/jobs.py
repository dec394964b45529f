from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# Keys the DLQ adds on top of an ingestion payload; never re-enqueued.
DLQ_METADATA_KEYS = frozenset(
    {
        "originalJobId",
        "failedReason",
        "attemptsMade",
        "failedAt",
        "failureCategory",
        "original_job_id",
        "failed_reason",
        "attempts_made",
        "failed_at",
        "failure_category",
    }
)

# Entry fields that wrap the payload rather than belong to it.
_DLQ_ENVELOPE_KEYS = frozenset({"id", "failureMetadata", "failure_metadata", "rawPayload", "raw_payload"})

INGEST_JOB_TYPE = "ingest"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    # Serialize camelCase on the wire so producers in other services keep one schema.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FailureReason(str, Enum):
    WORKSPACE_NOT_FOUND = "workspace_not_found"
    VECTOR_STORE_ERROR = "vector_store_error"
    DATABASE_ERROR = "database_error"
    TIMEOUT = "timeout"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


class IngestDocument(WireModel):
    text: str | None = None
    content: str | None = None
    title: str | None = None
    metadata: dict[str, Any] | None = None

    @property
    def body(self) -> str:
        # Producers send either field; text wins when both are present.
        return self.text or self.content or ""


class IngestPayload(WireModel):
    workspace_id: str = Field(min_length=1)
    documents: list[IngestDocument] = Field(default_factory=list)
    # Idempotency key; generated once here and carried through every retry.
    ingestion_id: str = Field(default_factory=lambda: str(uuid4()))
    source_metadata: dict[str, Any] | None = None


class BackoffPolicy(WireModel):
    kind: Literal["exponential"] = "exponential"
    base_delay_ms: int = Field(default=2000, ge=0)


class JobOptions(WireModel):
    max_attempts: int = Field(default=5, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    priority: int | None = Field(default=None, ge=1)
    delay_ms: int | None = Field(default=None, ge=0)
    enqueued_at: datetime = Field(default_factory=_utc_now)


class QueueCounts(WireModel):
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class FailureEvent(WireModel):
    job_id: str
    job_type: str = INGEST_JOB_TYPE
    queue_name: str
    failed_reason: str
    attempts_made: int
    max_attempts: int
    # Set when the worker gave up early on a non-retryable error.
    terminal: bool = False
    payload: dict[str, Any]
    failed_at: datetime = Field(default_factory=_utc_now)

    @property
    def is_final(self) -> bool:
        return self.terminal or self.attempts_made >= self.max_attempts


class FailureMetadata(WireModel):
    original_job_id: str
    failed_reason: str
    failure_category: FailureReason = FailureReason.UNKNOWN
    attempts_made: int
    failed_at: datetime


class DeadLetterEntry(IngestPayload):
    id: str
    failure_metadata: FailureMetadata
    # Job payload exactly as published, kept when it could not be parsed into the fields above.
    raw_payload: dict[str, Any] | None = None


class IngestResult(WireModel):
    document_count: int
    inserted_count: int
    document_ids: list[str]


class DLQStats(WireModel):
    # Entries read for the histogram; bounded by the stats page size.
    total: int
    # True number of stored entries, independent of the page bound.
    stored: int
    truncated: bool
    waiting: int
    active: int
    completed: int
    failures_by_reason: dict[str, int]


class RetryResult(WireModel):
    success: bool
    new_job_id: str | None = None


class RetryAllResult(WireModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0


def strip_dlq_metadata(data: dict[str, Any]) -> dict[str, Any]:
    # Drop DLQ bookkeeping at the top level and inside nested metadata maps.
    cleaned: dict[str, Any] = {}
    for key, value in data.items():
        if key in DLQ_METADATA_KEYS or key in _DLQ_ENVELOPE_KEYS:
            continue
        if key in {"sourceMetadata", "source_metadata", "metadata"} and isinstance(value, dict):
            value = {k: v for k, v in value.items() if k not in DLQ_METADATA_KEYS}
        cleaned[key] = value
    return cleaned
