"""
Click event and click aggregate models.

ClickEvent is transient: it lives only in the owning aggregator's inbox.
ClickAggregateDoc maps to the `click_aggregates` collection, one document
per (link_id, bucket_start_ms); `_id` is derived from that pair so a
bucket lookup is a primary-key read and re-saving a bucket is idempotent.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from schemas.models.base import MongoBaseModel
from schemas.models.link import normalise_region


class ClickEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    link_id: str
    region_code: str
    device_class: str
    timestamp_ms: int

    @field_validator("region_code")
    @classmethod
    def _normalise_region(cls, v: str) -> str:
        return normalise_region(v) or "UNKNOWN"


class BucketState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    FLUSHED = "flushed"


class CountEntry(BaseModel):
    region_code: str
    device_class: str
    count: int


def aggregate_id(link_id: str, bucket_start_ms: int) -> str:
    return f"{link_id}:{bucket_start_ms}"


class ClickAggregateDoc(MongoBaseModel):
    """Finalized click counts for one link and one time bucket."""

    # _id is "<link_id>:<bucket_start_ms>" — override base type
    id: Optional[str] = Field(default=None, alias="_id")

    link_id: str
    bucket_start_ms: int
    bucket_end_ms: int
    counts: list[CountEntry] = Field(default_factory=list)
    total: int = 0

    def model_post_init(self, __context) -> None:
        if self.id is None:
            self.id = aggregate_id(self.link_id, self.bucket_start_ms)

    @classmethod
    def from_counts(
        cls,
        link_id: str,
        bucket_start_ms: int,
        bucket_end_ms: int,
        counts: dict[tuple[str, str], int],
    ) -> "ClickAggregateDoc":
        entries = [
            CountEntry(region_code=region, device_class=device, count=count)
            for (region, device), count in sorted(counts.items())
        ]
        return cls(
            link_id=link_id,
            bucket_start_ms=bucket_start_ms,
            bucket_end_ms=bucket_end_ms,
            counts=entries,
            total=sum(counts.values()),
        )

    def counts_by_region(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for entry in self.counts:
            totals[entry.region_code] = totals.get(entry.region_code, 0) + entry.count
        return totals

    def counts_by_device(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for entry in self.counts:
            totals[entry.device_class] = totals.get(entry.device_class, 0) + entry.count
        return totals
