"""Redis cache for the link + geo-rule snapshot the resolver reads.

Stores the snapshot as JSON (not pickle) so entries are debuggable. Only the
collaborator-owned reference data is cached; evaluation verdicts are always
read fresh so a newly dead destination is skipped on the next request.
Every Redis failure degrades to a cache miss.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Optional

import redis.asyncio as aioredis

from shared.logging import get_logger

log = get_logger(__name__)


@dataclass
class CachedRule:
    region_code: str
    destination: str
    priority: int


@dataclass
class LinkSnapshot:
    link_id: str
    short_code: str
    default_destination: str
    status: str
    rules: list[CachedRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "LinkSnapshot":
        rules = [CachedRule(**rule) for rule in data.pop("rules", [])]
        return cls(rules=rules, **data)


class ResolutionCache:
    def __init__(
        self, redis_client: Optional[aioredis.Redis], ttl_seconds: int = 60
    ) -> None:
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds

    def _key(self, short_code: str) -> str:
        return f"link_snapshot:{short_code}"

    async def get(self, short_code: str) -> Optional[LinkSnapshot]:
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(self._key(short_code))
            if raw is None:
                return None
            return LinkSnapshot.from_dict(json.loads(raw))
        except Exception as e:
            log.warning("resolution_cache_get_error", short_code=short_code, error=str(e))
            return None

    async def set(self, snapshot: LinkSnapshot) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.setex(
                self._key(snapshot.short_code),
                self.ttl_seconds,
                json.dumps(asdict(snapshot)),
            )
        except Exception as e:
            log.error(
                "resolution_cache_set_error",
                short_code=snapshot.short_code,
                error=str(e),
            )

    async def invalidate(self, short_code: str) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.delete(self._key(short_code))
            log.info("resolution_cache_invalidated", short_code=short_code)
        except Exception as e:
            log.error(
                "resolution_cache_invalidate_error", short_code=short_code, error=str(e)
            )
