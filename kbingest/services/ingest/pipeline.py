from __future__ import annotations

import logging
import time
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError

from kbingest.core.errors import DatabaseError, IngestError, VectorStoreError, WorkspaceNotFoundError
from kbingest.domain.jobs import IngestPayload, IngestResult
from kbingest.ingestion.embeddings import embed_batch
from kbingest.persistence.repos.vectors import VectorRecord
from kbingest.services.telemetry import set_gauge


logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    async def workspace_exists(self, workspace_id: str) -> bool:
        ...

    async def insert_skip_duplicates(self, rows: list[dict[str, Any]]) -> int:
        ...


class VectorIndex(Protocol):
    async def upsert(self, workspace_id: str, records: list[VectorRecord]) -> int:
        ...


def document_id(workspace_id: str, ingestion_id: str, index: int) -> str:
    # Same inputs, same id: this is what makes replays idempotent.
    return f"{workspace_id}-{ingestion_id}-{index}"


class IngestionPipeline:
    """Executes one ingestion job; raises on any failed step so the queue retries it."""

    def __init__(self, documents: DocumentStore, vectors: VectorIndex) -> None:
        self._documents = documents
        self._vectors = vectors

    async def process(self, payload: IngestPayload, job_id: str | None = None) -> IngestResult:
        workspace_id = payload.workspace_id
        if not payload.documents:
            logger.warning("ingest_no_documents workspace_id=%s job_id=%s", workspace_id, job_id)
            return IngestResult(document_count=0, inserted_count=0, document_ids=[])

        started = time.perf_counter()
        logger.info(
            "ingest_started workspace_id=%s ingestion_id=%s documents=%s job_id=%s",
            workspace_id,
            payload.ingestion_id,
            len(payload.documents),
            job_id,
        )
        if not await self._documents.workspace_exists(workspace_id):
            raise WorkspaceNotFoundError(workspace_id)

        ids = [document_id(workspace_id, payload.ingestion_id, index) for index in range(len(payload.documents))]
        rows = [
            {
                "id": doc_id,
                "workspace_id": workspace_id,
                "ingestion_id": payload.ingestion_id,
                "document_index": index,
                "title": document.title,
                "content": document.body,
                "metadata_json": document.metadata,
            }
            for index, (doc_id, document) in enumerate(zip(ids, payload.documents))
        ]
        try:
            inserted = await self._documents.insert_skip_duplicates(rows)
        except (SQLAlchemyError, OSError) as exc:
            raise DatabaseError(f"Database write failed: {exc}") from exc

        texts = [document.body for document in payload.documents]
        records = [
            VectorRecord(
                id=doc_id,
                text=text,
                embedding=embedding,
                metadata={"title": document.title, "ingestion_id": payload.ingestion_id},
            )
            for doc_id, text, embedding, document in zip(ids, texts, embed_batch(texts), payload.documents)
        ]
        # Relational rows may already be committed here; retrying the whole job is safe.
        try:
            await self._vectors.upsert(workspace_id, records)
        except IngestError:
            raise
        except Exception as exc:  # noqa: BLE001 - any index failure aborts the job for a retry
            raise VectorStoreError(f"Vector store upsert failed: {exc}") from exc

        duration_ms = (time.perf_counter() - started) * 1000.0
        set_gauge("ingest_processing_duration_ms", duration_ms)
        logger.info(
            "ingest_completed workspace_id=%s ingestion_id=%s documents=%s inserted=%s job_id=%s",
            workspace_id,
            payload.ingestion_id,
            len(ids),
            inserted,
            job_id,
        )
        return IngestResult(document_count=len(ids), inserted_count=inserted, document_ids=ids)


async def reindex_workspace(documents: Any, vectors: VectorIndex, workspace_id: str) -> int:
    """Re-upsert every stored document of a workspace into the vector index.

    Recovery path for a vector index that drifted from the relational rows.
    """
    rows = await documents.list_workspace_documents(workspace_id)
    if not rows:
        logger.info("reindex_no_documents workspace_id=%s", workspace_id)
        return 0
    texts = [row.content for row in rows]
    records = [
        VectorRecord(
            id=row.id,
            text=text,
            embedding=embedding,
            metadata={"title": row.title, "ingestion_id": row.ingestion_id},
        )
        for row, text, embedding in zip(rows, texts, embed_batch(texts))
    ]
    await vectors.upsert(workspace_id, records)
    logger.info("reindex_completed workspace_id=%s documents=%s", workspace_id, len(records))
    return len(records)
