from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kbingest.domain.models import KbVector


@dataclass(frozen=True)
class VectorRecord:
    id: str
    text: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


class PgVectorIndex:
    """pgvector-backed index; every row carries its workspace tag for filtered search."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert(self, workspace_id: str, records: list[VectorRecord]) -> int:
        if not records:
            return 0
        stmt = pg_insert(KbVector).values(
            [
                {
                    "id": record.id,
                    "workspace_id": workspace_id,
                    "text": record.text,
                    "embedding": record.embedding,
                    "metadata_json": record.metadata or None,
                }
                for record in records
            ]
        )
        # Upsert by id so a retried job overwrites its own vectors in place.
        stmt = stmt.on_conflict_do_update(
            index_elements=[KbVector.id],
            set_={
                "workspace_id": stmt.excluded.workspace_id,
                "text": stmt.excluded.text,
                "embedding": stmt.excluded.embedding,
                "metadata_json": stmt.excluded.metadata_json,
                "updated_at": func.now(),
            },
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        return len(records)
