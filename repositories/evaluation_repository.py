"""Evaluation records keyed by destination URL.

Writes are last-write-wins on ``last_checked_at``: the filter only matches
when the stored record is not newer than the incoming one. When a newer
record already exists the upsert collides on ``_id`` and is discarded.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from pymongo import ASCENDING
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.errors import DuplicateKeyError

from schemas.models.evaluation import EvaluationRecordDoc
from shared.logging import get_logger

log = get_logger(__name__)


class EvaluationRepository:
    def __init__(self, collection: AsyncCollection) -> None:
        self._col = collection

    async def get(self, destination_url: str) -> Optional[EvaluationRecordDoc]:
        doc = await self._col.find_one({"_id": destination_url})
        return EvaluationRecordDoc.from_mongo(doc)

    async def get_many(
        self, destination_urls: Iterable[str]
    ) -> dict[str, EvaluationRecordDoc]:
        urls = list(dict.fromkeys(destination_urls))
        if not urls:
            return {}
        cursor = self._col.find({"_id": {"$in": urls}})
        records = [EvaluationRecordDoc.from_mongo(doc) async for doc in cursor]
        return {record.destination_url: record for record in records}

    async def upsert(self, record: EvaluationRecordDoc) -> bool:
        """Write *record* unless a newer one is stored. Returns True if written."""
        doc = record.to_mongo()
        doc.pop("_id", None)
        try:
            result = await self._col.update_one(
                {
                    "_id": record.destination_url,
                    "$or": [
                        {"last_checked_at": {"$lte": record.last_checked_at}},
                        {"last_checked_at": {"$exists": False}},
                    ],
                },
                {"$set": doc},
                upsert=True,
            )
        except DuplicateKeyError:
            log.info(
                "evaluation_write_superseded",
                destination_url=record.destination_url,
                last_checked_at=record.last_checked_at.isoformat(),
            )
            return False
        return result.matched_count > 0 or result.upserted_id is not None

    async def find_stale(
        self, older_than: datetime, limit: int
    ) -> list[EvaluationRecordDoc]:
        """Records not checked since *older_than*, oldest first."""
        cursor = (
            self._col.find({"last_checked_at": {"$lt": older_than}})
            .sort("last_checked_at", ASCENDING)
            .limit(limit)
        )
        return [EvaluationRecordDoc.from_mongo(doc) async for doc in cursor]
