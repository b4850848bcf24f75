from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from glassroute.models.schemas import SensorReading

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TelemetryJob:
    reading: SensorReading
    attempts: int = 0
    last_error: str | None = None
    result: dict[str, Any] | None = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def id(self) -> str:
        return str(self.reading.event_id)


class TelemetryQueue:
    """In-process worker pool for sensor readings.

    Each job is retried up to ``attempts`` times with exponential backoff
    (``backoff_seconds * 2 ** (attempt - 1)``). Jobs that exhaust their
    attempts are kept in :attr:`failed`, newest ``failed_limit`` only.
    """

    def __init__(
        self,
        handler: Callable[[SensorReading], dict[str, Any]],
        *,
        attempts: int = 3,
        backoff_seconds: float = 2.0,
        concurrency: int = 5,
        failed_limit: int = 500,
    ) -> None:
        self.handler = handler
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.concurrency = concurrency
        self.failed: deque[TelemetryJob] = deque(maxlen=failed_limit)
        self.processed = 0
        self._queue: asyncio.Queue[TelemetryJob] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []

    async def enqueue(self, reading: SensorReading) -> TelemetryJob:
        job = TelemetryJob(reading=reading)
        await self._queue.put(job)
        return job

    def pending(self) -> int:
        return self._queue.qsize()

    async def _run_job(self, job: TelemetryJob) -> None:
        for attempt in range(1, self.attempts + 1):
            job.attempts = attempt
            try:
                job.result = await asyncio.to_thread(self.handler, job.reading)
            except Exception as exc:
                job.last_error = str(exc)
                if attempt == self.attempts:
                    LOGGER.error("Job %s failed after %d attempts: %s", job.id, attempt, exc)
                    self.failed.append(job)
                    return
                delay = self.backoff_seconds * 2 ** (attempt - 1)
                LOGGER.warning("Job %s attempt %d failed (%s); retrying in %.1fs", job.id, attempt, exc, delay)
                await asyncio.sleep(delay)
            else:
                self.processed += 1
                LOGGER.info("Job %s processed for %s", job.id, job.reading.hardware_id)
                return

    async def _worker(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run_job(job)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [asyncio.create_task(self._worker()) for _ in range(self.concurrency)]
        LOGGER.info("Telemetry queue started with %d workers", self.concurrency)

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
