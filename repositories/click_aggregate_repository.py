"""Finalized click aggregates keyed by (link_id, bucket_start_ms)."""

from __future__ import annotations

from typing import Optional

from pymongo import ASCENDING
from pymongo.asynchronous.collection import AsyncCollection

from schemas.models.click import ClickAggregateDoc, aggregate_id


class ClickAggregateRepository:
    def __init__(self, collection: AsyncCollection) -> None:
        self._col = collection

    async def save(self, aggregate: ClickAggregateDoc) -> None:
        """Store a finalized bucket. Saving the same bucket again replaces it."""
        await self._col.replace_one(
            {"_id": aggregate.id}, aggregate.to_mongo(), upsert=True
        )

    async def get(
        self, link_id: str, bucket_start_ms: int
    ) -> Optional[ClickAggregateDoc]:
        doc = await self._col.find_one({"_id": aggregate_id(link_id, bucket_start_ms)})
        return ClickAggregateDoc.from_mongo(doc)

    async def list_range(
        self, link_id: str, start_ms: int, end_ms: int
    ) -> list[ClickAggregateDoc]:
        cursor = self._col.find(
            {
                "link_id": link_id,
                "bucket_start_ms": {"$gte": start_ms, "$lte": end_ms},
            }
        ).sort("bucket_start_ms", ASCENDING)
        return [ClickAggregateDoc.from_mongo(doc) async for doc in cursor]
