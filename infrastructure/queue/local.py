"""In-process evaluation queue.

Used when no RabbitMQ URL is configured (single-node deployments and
tests). Delivery policy is identical to the RabbitMQ runtime; jobs do not
survive a restart, which the staleness sweep compensates for.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from config import QueueSettings
from infrastructure.queue.base import BaseEvaluationQueue
from infrastructure.queue.protocol import JobHandler
from schemas.models.job import EvaluationJob
from shared.logging import get_logger

log = get_logger(__name__)


class LocalEvaluationQueue(BaseEvaluationQueue):
    def __init__(self, settings: QueueSettings) -> None:
        super().__init__(settings)
        self._queue: asyncio.Queue[EvaluationJob] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._retries: set[asyncio.Task] = set()
        self._handler: Optional[JobHandler] = None

    async def _publish(self, job: EvaluationJob) -> None:
        await self._queue.put(job)

    async def _schedule_retry(self, job: EvaluationJob, delay: float) -> None:
        async def _later() -> None:
            await asyncio.sleep(delay)
            await self._queue.put(job)

        task = asyncio.create_task(_later())
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def start(self, handler: JobHandler) -> None:
        self._handler = handler
        for index in range(self.settings.max_in_flight_jobs):
            self._workers.append(
                asyncio.create_task(self._work(handler), name=f"evaluation-worker-{index}")
            )
        log.info("local_evaluation_queue_started", workers=len(self._workers))

    async def _work(self, handler: JobHandler) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._deliver(handler, job)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job, including pending retries, is settled."""
        while True:
            await self.flush_publishes()
            await self._queue.join()
            if not self._retries and not self._publishes:
                return
            if self._retries:
                await asyncio.gather(*list(self._retries), return_exceptions=True)

    async def close(self) -> None:
        for task in [*self._workers, *self._retries]:
            task.cancel()
        await asyncio.gather(*self._workers, *self._retries, return_exceptions=True)
        self._workers.clear()
        self._retries.clear()
