from __future__ import annotations

import argparse
import asyncio

from kbingest.core.config import get_settings
from kbingest.core.logging import configure_logging
from kbingest.persistence.db import create_engine, create_session_factory
from kbingest.persistence.repos.documents import SqlDocumentStore
from kbingest.persistence.repos.vectors import PgVectorIndex
from kbingest.services.ingest.pipeline import reindex_workspace


async def _reindex(workspace_id: str) -> None:
    # Rebuild the vector index for one workspace from its relational rows.
    engine = create_engine(get_settings())
    try:
        session_factory = create_session_factory(engine)
        count = await reindex_workspace(
            SqlDocumentStore(session_factory),
            PgVectorIndex(session_factory),
            workspace_id,
        )
        print(f"reindexed_documents={count}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Re-upsert a workspace's documents into the vector index")
    parser.add_argument("--workspace", required=True, help="Workspace identifier")
    configure_logging()
    asyncio.run(_reindex(parser.parse_args().workspace))
