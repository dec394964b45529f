from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from redis.asyncio import Redis

from kbingest.core.errors import DeadLetterStoreError
from kbingest.domain.jobs import DeadLetterEntry, QueueCounts


logger = logging.getLogger(__name__)


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def dead_letter_id(original_job_id: str) -> str:
    # Derived from the failed job so a duplicate promotion lands on the same entry.
    return f"dlq-{original_job_id}"


class DeadLetterStore:
    """Durable DLQ in Redis: a hash of JSON entries plus a sorted index by failure time.

    Entries are never expired by Redis; only ``remove`` deletes them.
    """

    def __init__(self, redis: Redis, name: str) -> None:
        self._redis = redis
        self.name = name
        self._entries_key = f"{name}:entries"
        self._index_key = f"{name}:index"

    async def add(self, entry: DeadLetterEntry) -> bool:
        """Insert the entry unless one with the same id exists; returns True when written."""
        body = entry.model_dump_json(by_alias=True)
        created = await self._redis.hsetnx(self._entries_key, entry.id, body)
        if not created:
            return False
        # NX keeps the original failure time if a restore races a second promotion.
        await self._redis.zadd(self._index_key, {entry.id: _to_ms(entry.failure_metadata.failed_at)}, nx=True)
        return True

    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        raw = await self._redis.hget(self._entries_key, entry_id)
        if raw is None:
            return None
        return self._parse(entry_id, raw)

    async def page(self, *, offset: int = 0, limit: int = 20) -> list[DeadLetterEntry]:
        # Ordered by failure time, oldest first (insertion order for live promotions).
        if limit <= 0:
            return []
        ids = [_decode(item) for item in await self._redis.zrange(self._index_key, offset, offset + limit - 1)]
        if not ids:
            return []
        raws = await self._redis.hmget(self._entries_key, ids)
        entries: list[DeadLetterEntry] = []
        for entry_id, raw in zip(ids, raws):
            if raw is None:
                # Index drifted from the hash (removal interrupted); repair it.
                await self._redis.zrem(self._index_key, entry_id)
                continue
            try:
                entries.append(self._parse(entry_id, raw))
            except DeadLetterStoreError:
                # Leave it stored for manual inspection; one bad entry must not hide the rest.
                logger.warning("dlq_entry_unreadable entry_id=%s dlq=%s", entry_id, self.name, exc_info=True)
        return entries

    async def remove(self, entry_id: str) -> bool:
        """Delete an entry; only the caller that actually deleted it gets True."""
        removed = int(await self._redis.hdel(self._entries_key, entry_id))
        await self._redis.zrem(self._index_key, entry_id)
        return removed > 0

    async def restore(self, entry: DeadLetterEntry) -> bool:
        return await self.add(entry)

    async def ids_older_than(self, cutoff: datetime, *, limit: int | None = None) -> list[str]:
        # Exclusive bound: an entry failed exactly at the cutoff is kept.
        kwargs: dict[str, Any] = {}
        if limit is not None:
            kwargs = {"start": 0, "num": int(limit)}
        ids = await self._redis.zrangebyscore(self._index_key, "-inf", f"({_to_ms(cutoff)}", **kwargs)
        return [_decode(item) for item in ids]

    async def size(self) -> int:
        return int(await self._redis.zcard(self._index_key))

    async def counts(self) -> QueueCounts:
        # Entries sit in the DLQ until an operator acts; nothing is ever "active" here.
        return QueueCounts(waiting=await self.size())

    def _parse(self, entry_id: str, raw: Any) -> DeadLetterEntry:
        try:
            return DeadLetterEntry.model_validate_json(raw)
        except ValidationError as exc:
            raise DeadLetterStoreError(f"Unreadable DLQ entry {entry_id} in {self.name}") from exc
