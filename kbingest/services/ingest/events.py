from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
from typing import Any, Awaitable, Callable

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import ResponseError

from kbingest.core.config import Settings
from kbingest.core.errors import SubscriptionActiveError
from kbingest.domain.jobs import FailureEvent


logger = logging.getLogger(__name__)

FailureHandler = Callable[[FailureEvent], Awaitable[None]]

# Back off briefly when the stream read itself fails so a Redis outage does not spin.
_READ_ERROR_BACKOFF_S = 1.0


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


def default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class FailureSubscription:
    """Cancellable handle for the background loop feeding one handler."""

    def __init__(self, bus: FailureEventBus, handler: FailureHandler, consumer: str) -> None:
        self._bus = bus
        self._handler = handler
        self.consumer = consumer
        self._task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"failure-subscription:{self.consumer}")

    async def _run(self) -> None:
        while True:
            try:
                handled = await self._bus.dispatch_once(self._handler, consumer=self.consumer)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep the subscription alive across Redis blips
                logger.exception("failure_stream_read_failed stream=%s", self._bus.stream)
                await asyncio.sleep(_READ_ERROR_BACKOFF_S)
                continue
            if handled == 0:
                # Yield so a non-blocking read on an empty stream cannot starve the loop.
                await asyncio.sleep(0)

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._bus._release(self)


class FailureEventBus:
    """Failure notifications for one queue, carried on a Redis stream.

    Producers (the job wrapper) publish one event per failed attempt. Consumers
    read through a consumer group, so with any number of router processes each
    event is handled by exactly one of them. Within a process only one
    subscription may be active at a time.
    """

    def __init__(self, redis: Redis, settings: Settings, *, queue_name: str | None = None) -> None:
        self._redis = redis
        self._settings = settings
        self.stream = f"{queue_name or settings.ingest_queue_name}:events:failed"
        self.group = settings.failure_router_group
        self._subscription: FailureSubscription | None = None

    async def publish(self, event: FailureEvent) -> str:
        entry_id = await self._redis.xadd(
            self.stream,
            {"event": event.model_dump_json(by_alias=True)},
            maxlen=max(1, int(self._settings.failure_stream_maxlen)),
            approximate=True,
        )
        return _decode(entry_id)

    async def ensure_group(self) -> None:
        try:
            await self._redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def subscribe(self, handler: FailureHandler, *, consumer: str | None = None) -> FailureSubscription:
        if self._subscription is not None and self._subscription.active:
            raise SubscriptionActiveError(f"failure subscription already active on {self.stream}")
        await self.ensure_group()
        subscription = FailureSubscription(self, handler, consumer or default_consumer_name())
        subscription.start()
        self._subscription = subscription
        logger.info("failure_subscription_started stream=%s consumer=%s", self.stream, subscription.consumer)
        return subscription

    def _release(self, subscription: FailureSubscription) -> None:
        if self._subscription is subscription:
            self._subscription = None
            logger.info("failure_subscription_stopped stream=%s", self.stream)

    async def read_batch(self, consumer: str) -> list[tuple[str, FailureEvent | None]]:
        settings = self._settings
        count = max(1, int(settings.failure_stream_batch_size))
        # Reclaim events another router read but never acknowledged (crash mid-handle).
        claimed = await self._redis.xautoclaim(
            self.stream,
            self.group,
            consumer,
            min_idle_time=max(0, int(settings.failure_stream_claim_idle_ms)),
            start_id="0-0",
            count=count,
        )
        messages = list(claimed[1]) if claimed and len(claimed) > 1 else []
        if not messages:
            response = await self._redis.xreadgroup(
                self.group,
                consumer,
                {self.stream: ">"},
                count=count,
                block=max(0, int(settings.failure_stream_block_ms)),
            )
            messages = _stream_messages(response)
        return [(_decode(entry_id), _parse_event(entry_id, fields)) for entry_id, fields in messages]

    async def ack(self, entry_ids: list[str]) -> None:
        if entry_ids:
            await self._redis.xack(self.stream, self.group, *entry_ids)

    async def dispatch_once(self, handler: FailureHandler, *, consumer: str) -> int:
        # Unparseable entries are acknowledged too; they would never parse on redelivery.
        batch = await self.read_batch(consumer)
        for entry_id, event in batch:
            if event is not None:
                try:
                    await handler(event)
                except Exception:  # noqa: BLE001 - one bad event must not stall the stream
                    logger.exception("failure_handler_error entry_id=%s job_id=%s", entry_id, event.job_id)
            await self.ack([entry_id])
        return len(batch)


def _stream_messages(response: Any) -> list[tuple[Any, dict[Any, Any]]]:
    if not response:
        return []
    if isinstance(response, dict):
        # RESP3 connections return {stream: [[id, fields], ...]}.
        groups = list(response.values())
        return [tuple(item) for item in groups[0]] if groups else []
    return [tuple(item) for item in response[0][1]]


def _parse_event(entry_id: Any, fields: dict[Any, Any]) -> FailureEvent | None:
    raw = fields.get(b"event", fields.get("event")) if fields else None
    if raw is None:
        logger.warning("failure_event_missing_body entry_id=%s", _decode(entry_id))
        return None
    try:
        return FailureEvent.model_validate_json(raw)
    except ValidationError:
        logger.warning("failure_event_unparseable entry_id=%s", _decode(entry_id), exc_info=True)
        return None
