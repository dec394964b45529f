from __future__ import annotations

import asyncio
import logging
import signal
from typing import Awaitable, TypeVar

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from sqlalchemy.ext.asyncio import AsyncEngine

from kbingest.core.config import Settings, get_settings
from kbingest.core.errors import ShutdownRequestedError
from kbingest.persistence.db import create_engine, create_session_factory
from kbingest.persistence.repos.documents import SqlDocumentStore
from kbingest.persistence.repos.vectors import PgVectorIndex
from kbingest.services.ingest.dead_letters import DeadLetterStore
from kbingest.services.ingest.dlq import DLQManager
from kbingest.services.ingest.events import FailureEventBus
from kbingest.services.ingest.failure_router import FailureRouter
from kbingest.services.ingest.metrics import QueueMetricsEmitter, should_enable_queue_metrics
from kbingest.services.ingest.pipeline import IngestionPipeline
from kbingest.services.ingest.queue import JobQueue


logger = logging.getLogger(__name__)

T = TypeVar("T")


class IngestRuntime:
    """Connections and components of the ingestion subsystem for one process.

    Built explicitly by the entry point (worker, CLI, API) and passed down;
    ``close`` is idempotent and tears down in dependency order.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        redis: ArqRedis | None = None,
        engine: AsyncEngine | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._redis = redis
        self._owns_redis = redis is None
        self._engine = engine
        self._owns_engine = engine is None
        self._opened = False
        self._closed = False
        self._close_lock = asyncio.Lock()
        self._signals_installed = False
        self._close_task: asyncio.Future[None] | None = None
        self.shutdown_requested = asyncio.Event()

        self.events: FailureEventBus | None = None
        self.queue: JobQueue | None = None
        self.dead_letters: DeadLetterStore | None = None
        self.dlq: DLQManager | None = None
        self.router: FailureRouter | None = None
        self.pipeline: IngestionPipeline | None = None
        self.metrics: QueueMetricsEmitter | None = None

    @property
    def redis(self) -> ArqRedis:
        if self._redis is None:
            raise RuntimeError("IngestRuntime is not open")
        return self._redis

    async def open(self) -> IngestRuntime:
        if self._closed:
            raise RuntimeError("IngestRuntime was closed; build a new one")
        if self._opened:
            return self
        settings = self.settings
        if self._redis is None:
            self._redis = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.ingest_queue_name,
            )
        if self._engine is None:
            # Engines connect lazily, so DLQ-only tooling never touches Postgres.
            self._engine = create_engine(settings)
        session_factory = create_session_factory(self._engine)

        self.events = FailureEventBus(self._redis, settings)
        self.queue = JobQueue(self._redis, settings, events=self.events)
        self.dead_letters = DeadLetterStore(self._redis, settings.ingest_dlq_name)
        self.dlq = DLQManager(self.dead_letters, self.queue, settings)
        self.router = FailureRouter(self.dead_letters)
        self.pipeline = IngestionPipeline(SqlDocumentStore(session_factory), PgVectorIndex(session_factory))
        self.metrics = QueueMetricsEmitter(
            {self.queue.name: self.queue.counts, self.dead_letters.name: self.dead_letters.counts},
            interval_s=settings.queue_metrics_interval_s,
        )
        self._opened = True
        logger.info(
            "ingest_runtime_opened queue=%s dlq=%s role=%s",
            settings.ingest_queue_name,
            settings.ingest_dlq_name,
            settings.server_role,
        )
        return self

    async def start_background(self) -> None:
        # Router and metrics only run where the role asks for them.
        if not self._opened:
            await self.open()
        settings = self.settings
        if settings.dlq_router_enabled and self.router is not None and self.events is not None:
            await self.router.start(self.events)
        if self.metrics is not None:
            if should_enable_queue_metrics(settings):
                self.metrics.start()
            else:
                logger.debug("queue_metrics_disabled role=%s", settings.server_role)

    async def close(self) -> None:
        async with self._close_lock:
            if self._closed:
                return
            self._closed = True
            # Metrics first so a poll cannot race the connection teardown.
            if self.metrics is not None:
                await self.metrics.stop()
            if self.router is not None:
                await self.router.stop()
            if self._redis is not None and self._owns_redis:
                await self._redis.aclose()
            if self._engine is not None and self._owns_engine:
                await self._engine.dispose()
            self.shutdown_requested.set()
            logger.info("ingest_runtime_closed")

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        if self._signals_installed:
            logger.debug("ingest_signal_handlers_already_installed")
            return
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)
        self._signals_installed = True

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._close_task is not None:
            logger.info("ingest_shutdown_already_requested signal=%s", sig.name)
            return
        logger.info("ingest_shutdown_signal signal=%s", sig.name)
        # Flag first so in-flight work is cancelled before connections go away.
        self.shutdown_requested.set()
        self._close_task = asyncio.ensure_future(self.close())

    async def run_until_shutdown(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless shutdown is requested first.

        Raises ``ShutdownRequestedError`` after cancelling the interrupted work.
        """
        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self.shutdown_requested.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
            interrupted = stop.done()
        finally:
            stop.cancel()
        if not interrupted:
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception:  # noqa: BLE001 - connections may already be closing underneath it
            logger.debug("interrupted_operation_failed", exc_info=True)
        raise ShutdownRequestedError("shutdown requested before the operation finished")

    async def __aenter__(self) -> IngestRuntime:
        return await self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
