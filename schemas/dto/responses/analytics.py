"""
Response DTOs for live and persisted click analytics.

AggregateMessage is the frame pushed to stream subscribers:

  snapshot — sent once, first: every open and recently flushed bucket
  delta    — one click added to an open bucket
  flushed  — a bucket closed; its counts are final
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

from schemas.models.click import BucketState, CountEntry


class BucketView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bucket_start_ms: int
    bucket_end_ms: int
    state: BucketState
    counts: list[CountEntry]
    total: int


class AggregateMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["snapshot", "delta", "flushed"]
    link_id: str
    # snapshot frames
    buckets: Optional[list[BucketView]] = None
    # delta / flushed frames
    bucket_start_ms: Optional[int] = None
    counts: Optional[list[CountEntry]] = None


class BucketRangeResponse(BaseModel):
    """Response for ``GET /analytics/{link_id}/buckets``."""

    model_config = ConfigDict(populate_by_name=True)

    link_id: str
    start_ms: int
    end_ms: int
    bucket_ms: int
    buckets: list[BucketView]
    total: int
