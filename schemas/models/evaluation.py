"""
Evaluation record document model.

Maps to the `evaluation_records` collection. The destination URL itself is
the `_id`, so lookups by destination are a primary-key read. Records are
upserted on every workflow run and never deleted.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from schemas.models.base import MongoBaseModel


class Verdict(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DEAD = "dead"
    UNKNOWN = "unknown"

    @property
    def is_routable(self) -> bool:
        """Only a confirmed dead destination is skipped; unknown is optimistic."""
        return self is not Verdict.DEAD


class EvaluationRecordDoc(MongoBaseModel):
    """Latest health/quality verdict for one destination URL."""

    # _id is the destination URL — override base type
    id: str = Field(alias="_id")

    verdict: Verdict = Verdict.UNKNOWN
    quality_score: int = Field(default=0, ge=0, le=100)
    last_checked_at: datetime
    failure_streak: int = Field(default=0, ge=0)

    # Link of the job that produced this record; the staleness sweep uses it
    # to build re-evaluation jobs
    link_id: Optional[str] = None
    http_status: Optional[int] = None
    latency_ms: Optional[int] = None
    # True when rendering was unavailable and scoring ran on raw content
    partial: bool = False

    @property
    def destination_url(self) -> str:
        return self.id
