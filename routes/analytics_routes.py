"""
Click analytics.

GET /analytics/{link_id}/live     — open and recently flushed buckets held
                                    by the link's aggregator
GET /analytics/{link_id}/buckets  — persisted aggregates in a time range,
                                    optionally with empty buckets filled in
WS  /analytics/{link_id}/stream   — snapshot frame, then delta and flushed
                                    frames as clicks arrive
"""

from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from dependencies import get_aggregators, get_click_aggregate_repo
from errors import ValidationError
from repositories.click_aggregate_repository import ClickAggregateRepository
from schemas.dto.requests.analytics import BucketRangeQuery
from schemas.dto.responses.analytics import (
    AggregateMessage,
    BucketRangeResponse,
    BucketView,
)
from schemas.models.click import BucketState, ClickAggregateDoc
from services.click_aggregator import ClickAggregatorRegistry, Subscription
from shared.datetime_utils import now_ms
from shared.logging import get_logger
from shared.time_bucket_utils import bucket_starts_between

log = get_logger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])

DEFAULT_RANGE_MS = 24 * 3600 * 1000
MAX_RANGE_BUCKETS = 10_000

# Close code asking the client to reconnect (it fell behind the stream)
WS_TRY_AGAIN_LATER = 1013


def bucket_range_query(
    start_ms: Optional[int] = Query(default=None, ge=0),
    end_ms: Optional[int] = Query(default=None, ge=0),
    fill_gaps: bool = Query(default=False),
) -> BucketRangeQuery:
    try:
        return BucketRangeQuery(start_ms=start_ms, end_ms=end_ms, fill_gaps=fill_gaps)
    except PydanticValidationError as e:
        raise ValidationError(
            "end_ms must not be before start_ms",
            field="end_ms",
            details=e.errors(include_url=False, include_context=False),
        ) from None


def aggregate_view(aggregate: ClickAggregateDoc) -> BucketView:
    return BucketView(
        bucket_start_ms=aggregate.bucket_start_ms,
        bucket_end_ms=aggregate.bucket_end_ms,
        state=BucketState.FLUSHED,
        counts=aggregate.counts,
        total=aggregate.total,
    )


def fill_bucket_gaps(
    views: list[BucketView], start_ms: int, end_ms: int, bucket_ms: int
) -> list[BucketView]:
    """Add zero-count buckets for every window no persisted bucket covers."""
    filled = list(views)
    for start in bucket_starts_between(start_ms, end_ms, bucket_ms):
        end = start + bucket_ms
        covered = any(v.bucket_start_ms < end and start < v.bucket_end_ms for v in views)
        if not covered:
            filled.append(
                BucketView(
                    bucket_start_ms=start,
                    bucket_end_ms=end,
                    state=BucketState.FLUSHED,
                    counts=[],
                    total=0,
                )
            )
    return sorted(filled, key=lambda v: v.bucket_start_ms)


@router.get("/{link_id}/live", response_model=AggregateMessage)
async def live_snapshot(
    link_id: str,
    aggregators: ClickAggregatorRegistry = Depends(get_aggregators),
) -> AggregateMessage:
    buckets = await aggregators.snapshot(link_id)
    return AggregateMessage(type="snapshot", link_id=link_id, buckets=buckets)


@router.get("/{link_id}/buckets", response_model=BucketRangeResponse)
async def bucket_range(
    link_id: str,
    query: BucketRangeQuery = Depends(bucket_range_query),
    repo: ClickAggregateRepository = Depends(get_click_aggregate_repo),
    aggregators: ClickAggregatorRegistry = Depends(get_aggregators),
) -> BucketRangeResponse:
    bucket_ms = aggregators.settings.bucket_seconds * 1000
    end_ms = query.end_ms if query.end_ms is not None else now_ms()
    start_ms = query.start_ms if query.start_ms is not None else max(0, end_ms - DEFAULT_RANGE_MS)
    if start_ms > end_ms:
        raise ValidationError("start_ms must not be after end_ms", field="start_ms")

    if query.fill_gaps and (end_ms - start_ms) // bucket_ms > MAX_RANGE_BUCKETS:
        raise ValidationError(
            f"range too large to fill gaps (max {MAX_RANGE_BUCKETS} buckets)",
            field="fill_gaps",
        )

    aggregates = await repo.list_range(link_id, start_ms, end_ms)
    views = [aggregate_view(aggregate) for aggregate in aggregates]
    if query.fill_gaps:
        views = fill_bucket_gaps(views, start_ms, end_ms, bucket_ms)

    return BucketRangeResponse(
        link_id=link_id,
        start_ms=start_ms,
        end_ms=end_ms,
        bucket_ms=bucket_ms,
        buckets=views,
        total=sum(view.total for view in views),
    )


async def _relay(websocket: WebSocket, subscription: Subscription) -> None:
    async for message in subscription:
        await websocket.send_json(message.model_dump(mode="json", exclude_none=True))


async def _drain_client(websocket: WebSocket) -> None:
    # The stream is one-way; reading only detects the client going away
    while True:
        await websocket.receive_text()


@router.websocket("/{link_id}/stream")
async def click_stream(
    websocket: WebSocket,
    link_id: str,
    aggregators: ClickAggregatorRegistry = Depends(get_aggregators),
) -> None:
    await websocket.accept()
    subscription = await aggregators.subscribe(link_id)
    log.info("click_stream_opened", link_id=link_id, subscriber_id=subscription.subscriber_id)

    relay = asyncio.create_task(_relay(websocket, subscription))
    drain = asyncio.create_task(_drain_client(websocket))
    try:
        done, _ = await asyncio.wait({relay, drain}, return_when=asyncio.FIRST_COMPLETED)
        if relay in done and relay.exception() is None:
            # Subscription ended on the server side
            code = WS_TRY_AGAIN_LATER if subscription.overflowed else 1000
            await websocket.close(code=code)
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()
        for task in (relay, drain):
            task.cancel()
        await asyncio.gather(relay, drain, return_exceptions=True)
        log.info(
            "click_stream_closed",
            link_id=link_id,
            subscriber_id=subscription.subscriber_id,
            overflowed=subscription.overflowed,
        )
