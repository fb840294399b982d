"""Queue delivery callback for evaluation jobs."""

from __future__ import annotations

from infrastructure.queue.protocol import JobOutcome
from schemas.models.job import EvaluationJob, JobState
from services.evaluation.workflow import EvaluationWorkflow
from shared.logging import get_logger, log_with_context

log = get_logger(__name__)


class EvaluationJobHandler:
    """Runs the workflow for each delivered job and reports the outcome.

    Destination failures are handled inside the workflow and still count as
    ``ok`` (the dead verdict is the result). Anything else that escapes it,
    a store outage for instance, asks the queue for a redelivery.
    """

    def __init__(self, workflow: EvaluationWorkflow) -> None:
        self._workflow = workflow

    async def on_job(self, job: EvaluationJob) -> JobOutcome:
        job_log = log_with_context(
            log, job_id=job.job_id, destination_url=job.destination_url, link_id=job.link_id
        )
        try:
            checkpoint = await self._workflow.run(job)
        except Exception as e:
            job_log.error(
                "evaluation_job_error",
                attempt=job.attempt,
                error=str(e),
                error_type=type(e).__name__,
            )
            return JobOutcome.RETRY

        if checkpoint.state is JobState.FAILED:
            job_log.info(
                "evaluation_job_failed_recorded",
                failure_streak=checkpoint.failure_streak,
            )
        return JobOutcome.OK

    async def on_fatal(self, job: EvaluationJob, reason: str) -> None:
        log.error(
            "evaluation_job_fatal",
            destination_url=job.destination_url,
            link_id=job.link_id,
            attempts=job.attempt,
            reason=reason,
        )
        await self._workflow.record_fatal(job, reason)
