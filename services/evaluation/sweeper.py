"""Periodic re-evaluation of destinations whose verdict has gone stale.

Independent of per-job retries: even when a job's retry budget is spent or
its message was lost, the destination comes back through here once its
record is older than the staleness threshold. Enqueues are paced by a token
bucket so a large backlog cannot flood the fetch/render stage.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable

from config import EvaluationSettings
from infrastructure.queue.protocol import EvaluationQueue
from repositories.evaluation_repository import EvaluationRepository
from schemas.models.job import EvaluationJob
from shared.datetime_utils import ensure_utc, utcnow
from shared.logging import get_logger
from shared.rate_limit import TokenBucket

log = get_logger(__name__)


class StalenessSweeper:
    def __init__(
        self,
        evaluations: EvaluationRepository,
        queue: EvaluationQueue,
        limiter: TokenBucket,
        settings: EvaluationSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._evaluations = evaluations
        self._queue = queue
        self._limiter = limiter
        self.settings = settings
        self._clock = clock
        # Destinations already re-queued recently; skipped until the window passes
        self._recent: dict[str, datetime] = {}

    @property
    def _requeue_window(self) -> timedelta:
        return timedelta(seconds=self.settings.sweep_interval_seconds * 3)

    def _prune_recent(self, now: datetime) -> None:
        window = self._requeue_window
        for url, queued_at in list(self._recent.items()):
            if now - queued_at >= window:
                del self._recent[url]

    async def run_once(self) -> int:
        """Enqueue one batch of stale destinations; returns how many were queued."""
        now = self._clock()
        self._prune_recent(now)
        cutoff = now - timedelta(seconds=self.settings.staleness_threshold_seconds)
        stale = await self._evaluations.find_stale(cutoff, self.settings.sweep_batch_size)

        enqueued = 0
        skipped = 0
        for record in stale:
            if not record.link_id or record.destination_url in self._recent:
                skipped += 1
                continue
            await self._limiter.acquire()
            self._queue.enqueue(
                EvaluationJob(
                    destination_url=record.destination_url,
                    link_id=record.link_id,
                    enqueued_at=self._clock(),
                )
            )
            self._recent[record.destination_url] = now
            enqueued += 1

        log.info(
            "staleness_sweep_completed",
            stale_found=len(stale),
            enqueued=enqueued,
            skipped=skipped,
            oldest=ensure_utc(stale[0].last_checked_at).isoformat() if stale else None,
        )
        return enqueued

    async def run_forever(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                log.error(
                    "staleness_sweep_failed", error=str(e), error_type=type(e).__name__
                )
            try:
                await asyncio.wait_for(
                    stop.wait(), timeout=self.settings.sweep_interval_seconds
                )
            except asyncio.TimeoutError:
                pass
