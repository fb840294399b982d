"""
Evaluation job message and its durable checkpoint.

EvaluationJob is the transient queue message. JobCheckpoint maps to the
`evaluation_jobs` collection and records how far a job has progressed, so
a redelivered job resumes from its last completed step instead of starting
over.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from schemas.models.base import MongoBaseModel
from schemas.models.evaluation import Verdict


class EvaluationJob(BaseModel):
    """One request to evaluate a destination URL on behalf of a link."""

    model_config = ConfigDict(populate_by_name=True)

    destination_url: str
    link_id: str
    enqueued_at: datetime
    # Delivery attempt, starting at 1; bumped on every queue redelivery
    attempt: int = Field(default=1, ge=1)

    @property
    def job_id(self) -> str:
        """Stable across redeliveries of the same job."""
        raw = f"{self.destination_url}|{self.link_id}|{self.enqueued_at.isoformat()}"
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    def to_message(self) -> bytes:
        return self.model_dump_json().encode()

    @classmethod
    def from_message(cls, body: bytes) -> "EvaluationJob":
        return cls.model_validate_json(body)

    def next_attempt(self) -> "EvaluationJob":
        return self.model_copy(update={"attempt": self.attempt + 1})


class JobState(str, Enum):
    FETCHING = "fetching"
    RENDERING = "rendering"
    SCORING = "scoring"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"
    # Link deleted before the result could be written
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED, JobState.ABANDONED)


class FetchResult(BaseModel):
    """What the Fetching step learned about the destination."""

    http_status: int
    latency_ms: int
    content_length: int
    content_type: Optional[str] = None
    # Decoded body, truncated to the configured maximum
    text: str = ""


class JobCheckpoint(MongoBaseModel):
    """Persisted progress of one EvaluationJob."""

    # _id is the job id — override base type
    id: str = Field(alias="_id")

    job: EvaluationJob
    state: JobState = JobState.FETCHING

    fetch_attempts: int = 0
    fetch: Optional[FetchResult] = None
    last_error: Optional[str] = None

    rendered_text: Optional[str] = None
    render_partial: bool = False

    quality_score: Optional[int] = None
    verdict: Optional[Verdict] = None
    # Streak written with the record; fixed once so re-persisting is stable
    failure_streak: Optional[int] = None
    checked_at: Optional[datetime] = None

    started_at: datetime
    updated_at: datetime

    @property
    def job_id(self) -> str:
        return self.id
