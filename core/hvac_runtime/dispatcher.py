"""
Delivery Dispatcher

Bounded FIFO queue drained by one background task. Jobs are blocking callables
(HTTP posts, store writes) run in a worker thread with exponential backoff
between attempts. Classification never waits on delivery: a full queue drops
the job with a warning.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from .exceptions import SinkDeliveryFailure

logger = logging.getLogger(__name__)


@dataclass
class DeliveryJob:
    """One unit of downstream work."""

    description: str
    call: Callable[[], Any]


class Dispatcher:
    """Single-worker retrying delivery queue."""

    def __init__(
        self,
        name: str,
        max_attempts: int = 3,
        base_delay_seconds: float = 2.0,
        max_queue: int = 1000,
        failure: type[Exception] = SinkDeliveryFailure,
    ):
        """Initialize dispatcher.

        Args:
            name: Name used in log lines
            max_attempts: Attempts per job before it is dropped
            base_delay_seconds: Delay after the first failure, doubled each retry
            max_queue: Queue bound
            failure: Exception type logged when a job exhausts its attempts
        """
        self.name = name
        self.max_attempts = max(1, max_attempts)
        self.base_delay_seconds = base_delay_seconds
        self.failure = failure
        self._queue: asyncio.Queue[DeliveryJob] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self):
        if self._running:
            logger.warning(f"Dispatcher {self.name} already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=f"dispatcher-{self.name}")
        logger.info(f"Dispatcher {self.name} started")

    async def stop(self):
        """Cancel the worker. Pending jobs are discarded."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self.pending:
            logger.warning(f"Dispatcher {self.name} stopped with {self.pending} pending job(s)")
        logger.info(f"Dispatcher {self.name} stopped")

    async def join(self):
        """Wait until every queued job has been handled."""
        await self._queue.join()

    def submit(self, description: str, call: Callable[[], Any]) -> bool:
        """Queue a job. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(DeliveryJob(description, call))
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Dispatcher {self.name} queue full, dropping {description}")
            return False

    async def _run_loop(self):
        while True:
            job = await self._queue.get()
            try:
                await self._deliver(job)
            finally:
                self._queue.task_done()

    async def _deliver(self, job: DeliveryJob) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await asyncio.to_thread(job.call)
                self.delivered += 1
                return True
            except Exception as e:
                logger.warning(f"{self.name}: {job.description} attempt {attempt}/{self.max_attempts} failed: {e}")
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.base_delay_seconds * 2 ** (attempt - 1))

        self.failed += 1
        error = self.failure(f"{self.name}: giving up on {job.description} after {self.max_attempts} attempts")
        logger.error(str(error))
        return False

    def stats(self) -> dict:
        return {
            "pending": self.pending,
            "delivered": self.delivered,
            "failed": self.failed,
            "dropped": self.dropped,
        }
