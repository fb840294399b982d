"""
Link mutation notifications from the link management collaborator.

Creating or updating a link queues one evaluation job per distinct
destination: the default destination plus every geo-rule destination.
Updates and deletions also drop the cached resolution snapshot so the next
redirect sees the new rules. A deleted link needs no further action here:
jobs still in flight notice the missing link before persisting and abandon.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, Optional

from infrastructure.cache.resolution_cache import ResolutionCache
from infrastructure.queue.protocol import EvaluationQueue
from repositories.link_repository import LinkRepository
from schemas.models.job import EvaluationJob
from schemas.models.link import GeoRuleDoc, LinkDoc
from shared.datetime_utils import utcnow
from shared.logging import get_logger

log = get_logger(__name__)


def distinct_destinations(link: LinkDoc, rules: Iterable[GeoRuleDoc]) -> list[str]:
    """Default destination first, then rule destinations in priority order."""
    ordered = [link.default_destination]
    ordered.extend(rule.destination for rule in sorted(rules, key=lambda r: r.priority))
    return list(dict.fromkeys(ordered))


class LinkEventService:
    def __init__(
        self,
        links: LinkRepository,
        queue: EvaluationQueue,
        cache: Optional[ResolutionCache] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._links = links
        self._queue = queue
        self._cache = cache
        self._clock = clock

    async def _enqueue_for(self, link: LinkDoc) -> list[str]:
        rules = await self._links.get_geo_rules(link.link_id)
        destinations = distinct_destinations(link, rules)
        enqueued_at = self._clock()
        for destination in destinations:
            self._queue.enqueue(
                EvaluationJob(
                    destination_url=destination,
                    link_id=link.link_id,
                    enqueued_at=enqueued_at,
                )
            )
        return destinations

    async def link_created(self, link: LinkDoc) -> list[str]:
        destinations = await self._enqueue_for(link)
        log.info(
            "link_created_evaluations_enqueued",
            link_id=link.link_id,
            short_code=link.short_code,
            jobs=len(destinations),
        )
        return destinations

    async def link_updated(self, link: LinkDoc, changed_fields: list[str]) -> list[str]:
        if self._cache is not None:
            await self._cache.invalidate(link.short_code)
        destinations = await self._enqueue_for(link)
        log.info(
            "link_updated_evaluations_enqueued",
            link_id=link.link_id,
            short_code=link.short_code,
            changed_fields=changed_fields,
            jobs=len(destinations),
        )
        return destinations

    async def link_deleted(self, short_code: str) -> None:
        if self._cache is not None:
            await self._cache.invalidate(short_code)
        log.info("link_deleted_cache_dropped", short_code=short_code)
