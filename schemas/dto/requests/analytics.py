"""
Request DTOs for the analytics endpoints.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BucketRangeQuery(BaseModel):
    """Query parameters for ``GET /analytics/{link_id}/buckets``.

    Both bounds are epoch milliseconds; the range is inclusive of bucket
    starts. Missing bounds default to the last 24 hours in the route.
    """

    model_config = ConfigDict(populate_by_name=True)

    start_ms: Optional[int] = Field(default=None, ge=0)
    end_ms: Optional[int] = Field(default=None, ge=0)
    fill_gaps: bool = False

    @model_validator(mode="after")
    def _check_order(self) -> "BucketRangeQuery":
        if self.start_ms is not None and self.end_ms is not None:
            if self.end_ms < self.start_ms:
                raise ValueError("end_ms must not be before start_ms")
        return self
