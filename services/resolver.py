"""
Redirect resolution.

resolve() turns a short code and the requester's region into a destination:

1. Unknown or disabled short code → NotFoundError.
2. Geo rules for the link are walked in priority order (lowest number
   first); only rules whose region equals the requester region are
   considered.
3. The first matching rule whose destination is not confirmed ``dead``
   wins. ``unknown`` (never evaluated) and ``degraded`` are routable.
4. Otherwise the link's default destination is used, whatever its own
   verdict, unless block_on_dead is set and that destination is dead.

Every successful resolution hands exactly one ClickEvent to the click sink.
The sink never blocks; when the aggregator is overloaded the click is
dropped and the redirect still succeeds.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional

from errors import ActorOverloadError, NotFoundError
from infrastructure.cache.resolution_cache import (
    CachedRule,
    LinkSnapshot,
    ResolutionCache,
)
from repositories.evaluation_repository import EvaluationRepository
from repositories.link_repository import LinkRepository
from schemas.models.click import ClickEvent
from schemas.models.evaluation import Verdict
from schemas.models.link import LinkStatus, normalise_region
from shared.datetime_utils import now_ms
from shared.logging import get_logger, hash_ip, should_sample

log = get_logger(__name__)

ClickSink = Callable[[ClickEvent], None]


@dataclass(frozen=True)
class Resolution:
    destination: str
    evaluation_hint: Verdict
    link_id: str
    # Priority of the rule that matched; None when the default was used
    rule_priority: Optional[int] = None

    @property
    def used_default(self) -> bool:
        return self.rule_priority is None


def matching_rules(rules: Iterable[CachedRule], region: str) -> list[CachedRule]:
    """Rules for *region* in priority order (stable for equal priorities)."""
    region = normalise_region(region)
    if not region:
        return []
    matched = [rule for rule in rules if normalise_region(rule.region_code) == region]
    return sorted(matched, key=lambda rule: rule.priority)


def select_destination(
    rules: Iterable[CachedRule],
    region: str,
    verdicts: Mapping[str, Verdict],
    default_destination: str,
) -> tuple[str, Optional[int]]:
    """Pick the destination for *region*; returns (destination, rule priority).

    Destinations missing from *verdicts* are treated as ``unknown``.
    """
    for rule in matching_rules(rules, region):
        verdict = verdicts.get(rule.destination, Verdict.UNKNOWN)
        if verdict.is_routable:
            return rule.destination, rule.priority
    return default_destination, None


class RedirectResolver:
    def __init__(
        self,
        links: LinkRepository,
        evaluations: EvaluationRepository,
        click_sink: ClickSink,
        cache: Optional[ResolutionCache] = None,
        *,
        block_on_dead: bool = False,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._links = links
        self._evaluations = evaluations
        self._click_sink = click_sink
        self._cache = cache
        self.block_on_dead = block_on_dead
        self._clock = clock

    async def _load_snapshot(self, short_code: str) -> Optional[LinkSnapshot]:
        if self._cache is not None:
            cached = await self._cache.get(short_code)
            if cached is not None:
                return cached

        link = await self._links.get_by_short_code(short_code)
        if link is None:
            return None
        rules = await self._links.get_geo_rules(link.link_id)
        snapshot = LinkSnapshot(
            link_id=link.link_id,
            short_code=link.short_code,
            default_destination=link.default_destination,
            status=link.status.value,
            rules=[
                CachedRule(
                    region_code=rule.region_code,
                    destination=rule.destination,
                    priority=rule.priority,
                )
                for rule in rules
            ],
        )
        if self._cache is not None:
            await self._cache.set(snapshot)
        return snapshot

    async def _load_verdicts(self, destinations: list[str]) -> dict[str, Verdict]:
        # A failing evaluation store must never break redirects; fall back to
        # the optimistic default for every destination.
        try:
            records = await self._evaluations.get_many(destinations)
        except Exception as e:
            log.warning(
                "evaluation_lookup_failed",
                error=str(e),
                error_type=type(e).__name__,
                destinations=len(destinations),
            )
            return {}
        return {url: record.verdict for url, record in records.items()}

    async def resolve(
        self,
        short_code: str,
        requester_region: Optional[str],
        device_class: str = "unknown",
        timestamp_ms: Optional[int] = None,
        *,
        client_ip: Optional[str] = None,
    ) -> Resolution:
        snapshot = await self._load_snapshot(short_code)
        if snapshot is None:
            raise NotFoundError("URL not found", details={"short_code": short_code})
        if snapshot.status != LinkStatus.ACTIVE.value:
            raise NotFoundError("URL not found", details={"short_code": short_code})

        region = normalise_region(requester_region)
        candidates = [rule.destination for rule in matching_rules(snapshot.rules, region)]
        verdicts = await self._load_verdicts(
            candidates + [snapshot.default_destination]
        )
        destination, priority = select_destination(
            snapshot.rules, region, verdicts, snapshot.default_destination
        )
        hint = verdicts.get(destination, Verdict.UNKNOWN)

        if priority is None and self.block_on_dead and hint is Verdict.DEAD:
            log.info(
                "redirect_blocked_dead_destination",
                short_code=short_code,
                destination=destination,
            )
            raise NotFoundError("URL not found", details={"short_code": short_code})

        self._emit_click(
            ClickEvent(
                link_id=snapshot.link_id,
                region_code=region or "UNKNOWN",
                device_class=device_class,
                timestamp_ms=timestamp_ms if timestamp_ms is not None else self._clock(),
            )
        )

        if should_sample("url_redirect"):
            log.info(
                "url_redirect",
                short_code=short_code,
                region=region or None,
                rule_priority=priority,
                evaluation_hint=hint.value,
                ip=hash_ip(client_ip),
            )
        return Resolution(
            destination=destination,
            evaluation_hint=hint,
            link_id=snapshot.link_id,
            rule_priority=priority,
        )

    def _emit_click(self, event: ClickEvent) -> None:
        try:
            self._click_sink(event)
        except ActorOverloadError as e:
            log.warning("click_dropped_overload", link_id=e.link_id)
