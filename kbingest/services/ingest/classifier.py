from __future__ import annotations

from kbingest.domain.jobs import FailureReason


# Ordered: the first matching rule wins, so "Qdrant timeout" is a vector store error.
_RULES: tuple[tuple[FailureReason, tuple[str, ...]], ...] = (
    (FailureReason.WORKSPACE_NOT_FOUND, ("workspace not found", "workspace_not_found")),
    (FailureReason.VECTOR_STORE_ERROR, ("qdrant", "vector", "pgvector", "embedding")),
    (
        FailureReason.DATABASE_ERROR,
        ("database", "postgres", "sqlalchemy", "asyncpg", "prisma", "unique constraint"),
    ),
    (FailureReason.TIMEOUT, ("timeout", "timed out", "deadline")),
    (FailureReason.VALIDATION_ERROR, ("validation", "invalid", "required")),
)


def classify_failure(error: str | None) -> FailureReason:
    """Map an error message onto a coarse category for metrics and DLQ stats.

    Diagnostic only: the category never changes retry behavior.
    """
    if not error:
        return FailureReason.UNKNOWN
    message = error.lower()
    for reason, needles in _RULES:
        if any(needle in message for needle in needles):
            return reason
    return FailureReason.UNKNOWN
