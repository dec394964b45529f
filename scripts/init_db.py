from __future__ import annotations

import argparse
import asyncio

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert as pg_insert

from kbingest.core.config import get_settings
from kbingest.domain.models import Base, Workspace
from kbingest.persistence.db import create_engine


async def _init(workspaces: list[str]) -> None:
    engine = create_engine(get_settings())
    try:
        async with engine.begin() as conn:
            # pgvector must exist before the kb_vectors table is created.
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all)
            for workspace_id in workspaces:
                await conn.execute(
                    pg_insert(Workspace)
                    .values(id=workspace_id, name=workspace_id)
                    .on_conflict_do_nothing(index_elements=[Workspace.id])
                )
        print(f"schema_ready workspaces={len(workspaces)}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create ingestion tables and optional workspaces")
    parser.add_argument("--workspace", action="append", default=[], help="Workspace id to seed (repeatable)")
    asyncio.run(_init(parser.parse_args().workspace))
