"""
Durable evaluation workflow.

Each EvaluationJob moves through an explicit state machine whose progress
is checkpointed to MongoDB after every step:

    FETCHING → RENDERING → SCORING → PERSISTING → DONE
        │                               │
        └── retry budget exhausted ─────┴──→ FAILED   (dead record written)

    any state → ABANDONED   (link deleted; nothing written)

run() is safe to call again for the same job after a crash at any point:
it loads the checkpoint and resumes from the recorded state. Fetching,
rendering and scoring are naturally repeatable. Persisting is an upsert
keyed by destination URL, and the failure streak is fixed in the
checkpoint before the record is written, so repeating it never compounds.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional

from config import EvaluationSettings
from errors import FatalEvaluationError, RenderError, TransientFetchError
from infrastructure.fetcher import DestinationFetcher
from infrastructure.render.protocol import PageRenderer
from repositories.evaluation_repository import EvaluationRepository
from repositories.job_checkpoint_repository import JobCheckpointRepository
from repositories.link_repository import LinkRepository
from schemas.models.evaluation import EvaluationRecordDoc, Verdict
from schemas.models.job import EvaluationJob, JobCheckpoint, JobState
from services.evaluation.scoring import ContentScoringService
from shared.datetime_utils import utcnow
from shared.logging import get_logger

log = get_logger(__name__)

# Fetched bodies are stored in the checkpoint only up to this size
MAX_CHECKPOINT_TEXT = 100_000

Step = Callable[[JobCheckpoint], Awaitable[None]]


def fetch_backoff_seconds(base: float, failed_attempts: int) -> float:
    """Delay before the next fetch: base, 2×base, 4×base, ..."""
    return base * (2 ** max(0, failed_attempts - 1))


class EvaluationWorkflow:
    def __init__(
        self,
        checkpoints: JobCheckpointRepository,
        evaluations: EvaluationRepository,
        links: LinkRepository,
        fetcher: DestinationFetcher,
        scoring: ContentScoringService,
        settings: EvaluationSettings,
        renderer: Optional[PageRenderer] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._checkpoints = checkpoints
        self._evaluations = evaluations
        self._links = links
        self._fetcher = fetcher
        self._scoring = scoring
        self._renderer = renderer if settings.render_enabled else None
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self._steps: dict[JobState, Step] = {
            JobState.FETCHING: self._fetch,
            JobState.RENDERING: self._render,
            JobState.SCORING: self._score,
            JobState.PERSISTING: self._persist,
        }

    # ── Public API ───────────────────────────────────────────────────────────

    async def run(self, job: EvaluationJob) -> JobCheckpoint:
        """Run (or resume) *job* to a terminal state and return its checkpoint."""
        checkpoint = await self._load_or_start(job)
        if checkpoint.state.is_terminal:
            log.info(
                "evaluation_already_finished",
                job_id=checkpoint.job_id,
                state=checkpoint.state.value,
            )
            return checkpoint

        try:
            await asyncio.wait_for(
                self._advance(checkpoint), timeout=self.settings.job_timeout_seconds
            )
        except asyncio.TimeoutError:
            log.error(
                "evaluation_job_timeout",
                job_id=checkpoint.job_id,
                destination_url=job.destination_url,
                state=checkpoint.state.value,
                timeout_seconds=self.settings.job_timeout_seconds,
            )
            if checkpoint.state is JobState.PERSISTING and checkpoint.fetch is not None:
                # Scoring already set the streak to 0; a dead verdict needs a real one
                checkpoint.failure_streak = None
            await self._mark_failed(checkpoint, "job timeout")
            await self._save(checkpoint)
            await self._persist(checkpoint)
            await self._save(checkpoint)
        return checkpoint

    async def record_fatal(self, job: EvaluationJob, reason: str) -> None:
        """Write a dead verdict for a job whose deliveries are exhausted."""
        checkpoint = await self._checkpoints.load(job.job_id)
        if checkpoint is not None and checkpoint.state.is_terminal:
            return
        if checkpoint is None:
            checkpoint = self._new_checkpoint(job)
        await self._mark_failed(checkpoint, reason)
        await self._save(checkpoint)
        await self._persist(checkpoint)
        await self._save(checkpoint)

    # ── Engine ───────────────────────────────────────────────────────────────

    def _new_checkpoint(self, job: EvaluationJob) -> JobCheckpoint:
        now = self._clock()
        return JobCheckpoint(
            _id=job.job_id, job=job, state=JobState.FETCHING, started_at=now, updated_at=now
        )

    async def _load_or_start(self, job: EvaluationJob) -> JobCheckpoint:
        checkpoint = await self._checkpoints.load(job.job_id)
        if checkpoint is not None:
            if not checkpoint.state.is_terminal:
                log.info(
                    "evaluation_resumed",
                    job_id=checkpoint.job_id,
                    state=checkpoint.state.value,
                    attempt=job.attempt,
                )
            checkpoint.job = job
            return checkpoint

        checkpoint = self._new_checkpoint(job)
        await self._save(checkpoint)
        log.info(
            "evaluation_started",
            job_id=checkpoint.job_id,
            destination_url=job.destination_url,
            link_id=job.link_id,
        )
        return checkpoint

    async def _advance(self, checkpoint: JobCheckpoint) -> None:
        while not checkpoint.state.is_terminal:
            step = self._steps[checkpoint.state]
            try:
                await step(checkpoint)
            except FatalEvaluationError as e:
                log.error(
                    "evaluation_fetch_exhausted",
                    job_id=checkpoint.job_id,
                    destination_url=e.url,
                    attempts=e.attempts,
                    last_error=checkpoint.last_error,
                )
                await self._mark_failed(checkpoint, checkpoint.last_error or str(e))
            await self._save(checkpoint)

    async def _save(self, checkpoint: JobCheckpoint) -> None:
        checkpoint.updated_at = self._clock()
        await self._checkpoints.save(checkpoint)

    async def _mark_failed(self, checkpoint: JobCheckpoint, reason: str) -> None:
        """Fix the dead verdict and failure streak; Persisting writes them."""
        checkpoint.last_error = reason
        checkpoint.fetch = None
        checkpoint.verdict = Verdict.DEAD
        checkpoint.quality_score = 0
        if checkpoint.failure_streak is None:
            previous = await self._evaluations.get(checkpoint.job.destination_url)
            previous_streak = previous.failure_streak if previous is not None else 0
            checkpoint.failure_streak = previous_streak + max(1, checkpoint.fetch_attempts)
        checkpoint.state = JobState.PERSISTING

    # ── Steps ────────────────────────────────────────────────────────────────

    async def _fetch(self, checkpoint: JobCheckpoint) -> None:
        url = checkpoint.job.destination_url
        max_attempts = self.settings.fetch_max_attempts

        while checkpoint.fetch_attempts < max_attempts:
            try:
                result = await self._fetcher.fetch(url)
            except TransientFetchError as e:
                checkpoint.fetch_attempts += 1
                checkpoint.last_error = e.reason
                await self._save(checkpoint)
                log.warning(
                    "evaluation_fetch_failed",
                    job_id=checkpoint.job_id,
                    destination_url=url,
                    attempt=checkpoint.fetch_attempts,
                    max_attempts=max_attempts,
                    reason=e.reason,
                )
                if checkpoint.fetch_attempts < max_attempts:
                    await self._sleep(
                        fetch_backoff_seconds(
                            self.settings.fetch_backoff_base_seconds,
                            checkpoint.fetch_attempts,
                        )
                    )
                continue

            result.text = result.text[:MAX_CHECKPOINT_TEXT]
            checkpoint.fetch = result
            checkpoint.last_error = None
            checkpoint.state = (
                JobState.RENDERING if self._renderer is not None else JobState.SCORING
            )
            return

        raise FatalEvaluationError(url, checkpoint.fetch_attempts)

    async def _render(self, checkpoint: JobCheckpoint) -> None:
        checkpoint.state = JobState.SCORING
        if self._renderer is None:
            return
        url = checkpoint.job.destination_url
        timeout = self.settings.render_timeout_seconds
        try:
            page = await asyncio.wait_for(
                self._renderer.render(url, timeout), timeout=timeout
            )
        except Exception as e:
            # Rendering is optional; any renderer failure only degrades the run
            checkpoint.render_partial = True
            checkpoint.rendered_text = None
            log.warning(
                "evaluation_partial_run",
                job_id=checkpoint.job_id,
                destination_url=url,
                reason=str(e) or type(e).__name__,
                error_type=type(e).__name__,
                expected=isinstance(e, (RenderError, asyncio.TimeoutError)),
            )
            return
        checkpoint.render_partial = False
        checkpoint.rendered_text = page.text[:MAX_CHECKPOINT_TEXT]

    async def _score(self, checkpoint: JobCheckpoint) -> None:
        result = await self._scoring.score(checkpoint.fetch, checkpoint.rendered_text)
        checkpoint.quality_score = result.score
        checkpoint.verdict = result.verdict
        checkpoint.failure_streak = 0
        checkpoint.state = JobState.PERSISTING
        log.info(
            "evaluation_scored",
            job_id=checkpoint.job_id,
            destination_url=checkpoint.job.destination_url,
            score=result.score,
            heuristic_score=result.heuristic_score,
            inference_score=result.inference_score,
            verdict=result.verdict.value,
            markers=result.markers or None,
        )

    async def _persist(self, checkpoint: JobCheckpoint) -> None:
        job = checkpoint.job
        if not await self._links.exists(job.link_id):
            checkpoint.state = JobState.ABANDONED
            log.info(
                "evaluation_abandoned_link_deleted",
                job_id=checkpoint.job_id,
                link_id=job.link_id,
                destination_url=job.destination_url,
            )
            return

        fetch = checkpoint.fetch
        record = EvaluationRecordDoc(
            _id=job.destination_url,
            verdict=checkpoint.verdict or Verdict.UNKNOWN,
            quality_score=checkpoint.quality_score or 0,
            last_checked_at=self._clock(),
            failure_streak=checkpoint.failure_streak or 0,
            link_id=job.link_id,
            http_status=fetch.http_status if fetch is not None else None,
            latency_ms=fetch.latency_ms if fetch is not None else None,
            partial=checkpoint.render_partial,
        )
        await self._evaluations.upsert(record)
        checkpoint.checked_at = record.last_checked_at
        checkpoint.state = JobState.DONE if fetch is not None else JobState.FAILED

        log_fn = log.info if checkpoint.state is JobState.DONE else log.error
        log_fn(
            "evaluation_persisted",
            job_id=checkpoint.job_id,
            destination_url=job.destination_url,
            verdict=record.verdict.value,
            quality_score=record.quality_score,
            failure_streak=record.failure_streak,
            partial=record.partial,
            state=checkpoint.state.value,
        )
