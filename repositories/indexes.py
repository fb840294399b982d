"""Index bootstrap, run once at startup by both the app and the worker."""

from __future__ import annotations

from pymongo import ASCENDING
from pymongo.asynchronous.database import AsyncDatabase

from shared.logging import get_logger

log = get_logger(__name__)

LINKS = "links"
GEO_RULES = "geo_rules"
EVALUATION_RECORDS = "evaluation_records"
CLICK_AGGREGATES = "click_aggregates"
EVALUATION_JOBS = "evaluation_jobs"

# Finished checkpoints are only useful while a redelivery could still arrive
CHECKPOINT_TTL_SECONDS = 7 * 24 * 3600


async def ensure_indexes(db: AsyncDatabase) -> None:
    await db[LINKS].create_index([("short_code", ASCENDING)], unique=True)
    await db[GEO_RULES].create_index(
        [("link_id", ASCENDING), ("priority", ASCENDING)]
    )
    await db[EVALUATION_RECORDS].create_index([("last_checked_at", ASCENDING)])
    await db[CLICK_AGGREGATES].create_index(
        [("link_id", ASCENDING), ("bucket_start_ms", ASCENDING)], unique=True
    )
    await db[EVALUATION_JOBS].create_index(
        [("updated_at", ASCENDING)], expireAfterSeconds=CHECKPOINT_TTL_SECONDS
    )
    log.info("mongo_indexes_ensured")
