"""Durable progress of evaluation jobs (one document per job id)."""

from __future__ import annotations

from typing import Optional

from pymongo.asynchronous.collection import AsyncCollection

from schemas.models.job import JobCheckpoint


class JobCheckpointRepository:
    def __init__(self, collection: AsyncCollection) -> None:
        self._col = collection

    async def load(self, job_id: str) -> Optional[JobCheckpoint]:
        doc = await self._col.find_one({"_id": job_id})
        return JobCheckpoint.from_mongo(doc)

    async def save(self, checkpoint: JobCheckpoint) -> None:
        await self._col.replace_one(
            {"_id": checkpoint.job_id}, checkpoint.to_mongo(), upsert=True
        )
