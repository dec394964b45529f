from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kbingest.domain.models import KbDocument, Workspace


class SqlDocumentStore:
    """Relational side of ingestion: workspace lookups and idempotent document rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def workspace_exists(self, workspace_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(Workspace.id).where(Workspace.id == workspace_id))
            return result.scalar_one_or_none() is not None

    async def insert_skip_duplicates(self, rows: list[dict[str, Any]]) -> int:
        # ON CONFLICT DO NOTHING makes a replayed ingestion a no-op for existing ids.
        if not rows:
            return 0
        stmt = pg_insert(KbDocument).values(rows).on_conflict_do_nothing(index_elements=[KbDocument.id])
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return max(0, int(result.rowcount or 0))

    async def list_workspace_documents(self, workspace_id: str) -> list[KbDocument]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(KbDocument)
                .where(KbDocument.workspace_id == workspace_id)
                .order_by(KbDocument.ingestion_id, KbDocument.document_index)
            )
            return list(result.scalars().all())
