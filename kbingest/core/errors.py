from __future__ import annotations

from pydantic import ValidationError


class KbIngestError(Exception):
    """Base error for kbingest."""


class IngestError(KbIngestError):
    """Ingestion pipeline failure."""


class NonRetryableError(IngestError):
    """Failure that will not resolve by retrying the same payload."""


class WorkspaceNotFoundError(NonRetryableError):
    """Referenced workspace does not exist."""

    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"Workspace not found: {workspace_id}")
        self.workspace_id = workspace_id


class PayloadValidationError(NonRetryableError):
    """Ingestion payload failed validation."""


class DatabaseError(IngestError):
    """Relational write failure."""


class VectorStoreError(IngestError):
    """Vector index upsert failure."""


class DeadLetterStoreError(KbIngestError):
    """Dead letter store unavailable or holding an unreadable entry."""


class SubscriptionActiveError(KbIngestError):
    """A failure subscription is already active on this bus."""


class ShutdownRequestedError(KbIngestError):
    """A termination signal interrupted the running operation."""


def is_non_retryable(exc: BaseException) -> bool:
    # Pydantic validation errors are deterministic for a given payload.
    return isinstance(exc, (NonRetryableError, ValidationError))
