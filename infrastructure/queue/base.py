"""Delivery policy common to every evaluation queue runtime.

- enqueue() schedules the publish as a background task and returns at once;
  publish failures are logged, never raised to the caller.
- A ``retry`` outcome is redelivered after an exponential backoff with the
  attempt counter bumped; once ``max_delivery_attempts`` is reached the job
  is converted to ``fatal``.
- A ``fatal`` outcome asks the handler to record a dead verdict so routing
  does not stay on stale data.
- At most ``max_in_flight_jobs`` deliveries run at once.
"""

from __future__ import annotations

import asyncio

from config import QueueSettings
from infrastructure.queue.protocol import JobHandler, JobOutcome
from schemas.models.job import EvaluationJob
from shared.logging import get_logger

log = get_logger(__name__)


def retry_delay_seconds(attempt: int, base: float, maximum: float) -> float:
    """Backoff before redelivering a job that just failed *attempt*."""
    return min(base * (2 ** max(0, attempt - 1)), maximum)


class BaseEvaluationQueue:
    def __init__(self, settings: QueueSettings) -> None:
        self.settings = settings
        self._in_flight = asyncio.Semaphore(settings.max_in_flight_jobs)
        self._publishes: set[asyncio.Task] = set()

    # ── Producer side ────────────────────────────────────────────────────────

    def enqueue(self, job: EvaluationJob) -> None:
        task = asyncio.create_task(self._publish(job))
        self._publishes.add(task)
        task.add_done_callback(self._publish_done)

    def _publish_done(self, task: asyncio.Task) -> None:
        self._publishes.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(
                "evaluation_enqueue_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def flush_publishes(self) -> None:
        """Wait for every publish scheduled so far."""
        if self._publishes:
            await asyncio.gather(*list(self._publishes), return_exceptions=True)

    async def _publish(self, job: EvaluationJob) -> None:
        raise NotImplementedError

    async def _schedule_retry(self, job: EvaluationJob, delay: float) -> None:
        raise NotImplementedError

    # ── Consumer side ────────────────────────────────────────────────────────

    async def _deliver(self, handler: JobHandler, job: EvaluationJob) -> JobOutcome:
        async with self._in_flight:
            outcome = await handler.on_job(job)

        if outcome is JobOutcome.RETRY:
            if job.attempt >= self.settings.max_delivery_attempts:
                log.error(
                    "evaluation_delivery_exhausted",
                    destination_url=job.destination_url,
                    link_id=job.link_id,
                    attempts=job.attempt,
                )
                outcome = JobOutcome.FATAL
                await self._record_fatal(handler, job, "delivery attempts exhausted")
            else:
                delay = retry_delay_seconds(
                    job.attempt,
                    self.settings.retry_backoff_base_seconds,
                    self.settings.retry_backoff_max_seconds,
                )
                log.warning(
                    "evaluation_job_retry_scheduled",
                    destination_url=job.destination_url,
                    attempt=job.attempt,
                    delay_seconds=delay,
                )
                await self._schedule_retry(job.next_attempt(), delay)
        elif outcome is JobOutcome.FATAL:
            await self._record_fatal(handler, job, "handler reported fatal")
        return outcome

    async def _record_fatal(
        self, handler: JobHandler, job: EvaluationJob, reason: str
    ) -> None:
        try:
            await handler.on_fatal(job, reason)
        except Exception as e:
            # The staleness sweep re-queues the destination later
            log.error(
                "evaluation_fatal_write_failed",
                destination_url=job.destination_url,
                error=str(e),
                error_type=type(e).__name__,
            )
