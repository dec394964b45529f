from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable

from kbingest.core.config import Settings
from kbingest.domain.jobs import QueueCounts
from kbingest.services.telemetry import set_gauge


logger = logging.getLogger(__name__)

CountsSource = Callable[[], Awaitable[QueueCounts]]

_GAUGES = ("waiting", "delayed", "active", "completed", "failed")


def should_enable_queue_metrics(settings: Settings) -> bool:
    # Only worker-side processes poll; API replicas would just repeat the same reads.
    if settings.queue_metrics_enabled:
        return True
    return settings.server_role.lower() in {"worker", "all"}


class QueueMetricsEmitter:
    def __init__(self, sources: dict[str, CountsSource], *, interval_s: float = 5.0) -> None:
        self._sources = dict(sources)
        self._interval_s = max(0.1, float(interval_s))
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.debug("queue_metrics_already_running")
            return
        self._task = asyncio.create_task(self._loop(), name="queue-metrics")
        logger.info("queue_metrics_started queues=%s interval_s=%s", ",".join(self._sources), self._interval_s)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("queue_metrics_stopped")

    async def poll_once(self) -> None:
        for queue_name, source in self._sources.items():
            try:
                counts = await source()
            except Exception as exc:  # noqa: BLE001 - a missed sample is not worth crashing the loop
                logger.debug("queue_metrics_poll_failed queue=%s error=%s", queue_name, exc)
                continue
            for field in _GAUGES:
                set_gauge(f"ingest_queue_{field}", getattr(counts, field), labels={"queue": queue_name})

    async def _loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self._interval_s)
