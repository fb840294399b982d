"""
Per-link click aggregation actors.

Every link gets exactly one ClickAggregatorActor in the process. The actor
owns that link's counters and is the only code that mutates them: clicks,
flush requests, subscriptions and snapshots all arrive as messages in its
inbox and are handled one at a time by a single task, so no lock is needed.

Bucket lifecycle:

    OPEN ──(window end, explicit flush, or a click for a later window)──▶
    CLOSING ──(in-flight clicks for the bucket drained)──▶
    FLUSHED (aggregate saved and broadcast; immutable from here on)

The next bucket opens with the next click. Clicks older than the end of
the last flushed bucket are late: they are counted in ``late_dropped`` and
otherwise ignored, because finalized buckets never change.

Subscribers get a snapshot of the open bucket and recently flushed buckets
first, then a delta per click and a ``flushed`` frame per closed bucket.
The snapshot is produced inside the actor, so nothing can slip between it
and the first delta.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from config import AggregatorSettings
from errors import ActorOverloadError
from schemas.dto.responses.analytics import AggregateMessage, BucketView
from schemas.models.click import (
    BucketState,
    ClickAggregateDoc,
    ClickEvent,
    CountEntry,
)
from shared.datetime_utils import now_ms
from shared.logging import get_logger, should_sample
from shared.time_bucket_utils import bucket_end_ms, bucket_start_ms

log = get_logger(__name__)


class AggregateSink(Protocol):
    async def save(self, aggregate: ClickAggregateDoc) -> None: ...


# ── Buckets ──────────────────────────────────────────────────────────────────


@dataclass
class Bucket:
    start_ms: int
    end_ms: int
    state: BucketState = BucketState.OPEN
    counts: dict[tuple[str, str], int] = field(default_factory=dict)
    max_timestamp_ms: int = -1

    def contains(self, timestamp_ms: int) -> bool:
        return self.start_ms <= timestamp_ms < self.end_ms

    def add(self, event: ClickEvent) -> None:
        if self.state is BucketState.FLUSHED:
            raise RuntimeError("flushed buckets are immutable")
        key = (event.region_code, event.device_class)
        self.counts[key] = self.counts.get(key, 0) + 1
        self.max_timestamp_ms = max(self.max_timestamp_ms, event.timestamp_ms)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def entries(self) -> list[CountEntry]:
        return [
            CountEntry(region_code=region, device_class=device, count=count)
            for (region, device), count in sorted(self.counts.items())
        ]

    def view(self) -> BucketView:
        return BucketView(
            bucket_start_ms=self.start_ms,
            bucket_end_ms=self.end_ms,
            state=self.state,
            counts=self.entries(),
            total=self.total,
        )

    def to_aggregate(self, link_id: str) -> ClickAggregateDoc:
        return ClickAggregateDoc.from_counts(
            link_id, self.start_ms, self.end_ms, self.counts
        )


# ── Subscriptions ────────────────────────────────────────────────────────────


class Subscription:
    """A subscriber's view of one actor's stream.

    Iterate it (``async for message in subscription``) to receive frames.
    Iteration ends when the subscriber falls too far behind or the actor
    stops; call close() when the consumer goes away.
    """

    def __init__(self, link_id: str, subscriber_id: int, maxsize: int) -> None:
        self.link_id = link_id
        self.subscriber_id = subscriber_id
        self._queue: asyncio.Queue[Optional[AggregateMessage]] = asyncio.Queue(
            maxsize=maxsize + 1
        )
        self._maxsize = maxsize
        self._on_close: Optional[Callable[[int], None]] = None
        self.closed = False
        self.overflowed = False

    def _push(self, message: AggregateMessage) -> bool:
        """Called by the actor. Returns False when the subscriber overflowed."""
        if self.closed:
            return False
        if self._queue.qsize() >= self._maxsize:
            self._terminate(overflowed=True)
            return False
        self._queue.put_nowait(message)
        return True

    def _terminate(self, *, overflowed: bool = False) -> None:
        if self.closed:
            return
        self.closed = True
        self.overflowed = overflowed
        if overflowed:
            # The stream has a gap now; pending deltas are useless without it
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def get(self) -> Optional[AggregateMessage]:
        """Next frame, or None once the subscription has ended."""
        message = await self._queue.get()
        if message is None:
            # Keep returning None to later callers as well
            self._queue.put_nowait(None)
        return message

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> AggregateMessage:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message

    def close(self) -> None:
        if self._on_close is not None:
            self._on_close(self.subscriber_id)
            self._on_close = None
        self._terminate()


# ── Inbox messages ───────────────────────────────────────────────────────────


@dataclass
class _Click:
    event: ClickEvent


@dataclass
class _Flush:
    reply: asyncio.Future


@dataclass
class _Subscribe:
    subscription: Subscription
    reply: asyncio.Future


@dataclass
class _Unsubscribe:
    subscriber_id: int


@dataclass
class _Snapshot:
    reply: asyncio.Future


@dataclass
class _Stop:
    reply: asyncio.Future


# ── Actor ────────────────────────────────────────────────────────────────────


class ClickAggregatorActor:
    _subscriber_ids = itertools.count(1)

    def __init__(
        self,
        link_id: str,
        sink: AggregateSink,
        settings: AggregatorSettings,
        *,
        watermark_ms: int = 0,
        clock: Callable[[], int] = now_ms,
        on_retire: Optional[Callable[["ClickAggregatorActor"], None]] = None,
    ) -> None:
        self.link_id = link_id
        self._sink = sink
        self.bucket_ms = settings.bucket_seconds * 1000
        self.idle_timeout_ms = settings.idle_timeout_seconds * 1000
        self.subscriber_queue_size = settings.subscriber_queue_size
        self._clock = clock
        self._on_retire = on_retire

        self._inbox: asyncio.Queue[Any] = asyncio.Queue(maxsize=settings.inbox_size)
        self._deferred: deque[Any] = deque()
        self._current: Optional[Bucket] = None
        self._recent: deque[Bucket] = deque(maxlen=settings.recent_buckets)
        self._subscribers: dict[int, Subscription] = {}
        # Exclusive end of the last finalized bucket; earlier clicks are late
        self.watermark_ms = watermark_ms
        self.last_activity_ms = clock()
        self.late_dropped = 0
        self._task: Optional[asyncio.Task] = None
        self.stopped = False

    # ── Public API (called from outside the actor task) ──────────────────────

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(
                self._run(), name=f"click-aggregator-{self.link_id}"
            )

    def offer(self, event: ClickEvent) -> None:
        """Queue a click without waiting. Raises ActorOverloadError when full."""
        if event.link_id != self.link_id:
            raise ValueError(
                f"click for link {event.link_id} sent to aggregator of {self.link_id}"
            )
        if self.stopped:
            raise RuntimeError(f"aggregator for {self.link_id} has stopped")
        try:
            self._inbox.put_nowait(_Click(event))
        except asyncio.QueueFull:
            raise ActorOverloadError(self.link_id) from None

    async def _request(self, factory: Callable[[asyncio.Future], Any]) -> Any:
        reply = asyncio.get_running_loop().create_future()
        await self._inbox.put(factory(reply))
        return await reply

    async def flush(self) -> Optional[ClickAggregateDoc]:
        """Close the open bucket now; returns its aggregate (None if none open)."""
        return await self._request(_Flush)

    async def subscribe(self) -> Subscription:
        subscription = Subscription(
            self.link_id, next(self._subscriber_ids), self.subscriber_queue_size
        )
        subscription._on_close = self._unsubscribe
        return await self._request(lambda reply: _Subscribe(subscription, reply))

    async def snapshot(self) -> list[BucketView]:
        return await self._request(_Snapshot)

    async def stop(self) -> None:
        """Flush the open bucket, end all subscriptions and stop the actor."""
        if self.stopped or self._task is None:
            return
        await self._request(_Stop)
        await self._task

    @property
    def pending(self) -> int:
        return self._inbox.qsize() + len(self._deferred)

    @property
    def current_bucket(self) -> Optional[Bucket]:
        return self._current

    @property
    def recent_buckets(self) -> list[Bucket]:
        return list(self._recent)

    def _unsubscribe(self, subscriber_id: int) -> None:
        if self.stopped:
            return
        try:
            self._inbox.put_nowait(_Unsubscribe(subscriber_id))
        except asyncio.QueueFull:
            # Removed lazily: the next broadcast drops closed subscriptions
            pass

    # ── Actor loop ───────────────────────────────────────────────────────────

    def _seconds_until_deadline(self) -> Optional[float]:
        if self._current is not None:
            deadline = self._current.end_ms
        elif self._subscribers:
            # Never retire while someone is listening
            return None
        else:
            deadline = self.last_activity_ms + self.idle_timeout_ms
        return max(0.0, (deadline - self._clock()) / 1000)

    async def _next_message(self) -> Optional[Any]:
        if self._deferred:
            return self._deferred.popleft()
        # Queued messages win over an already-expired deadline
        if not self._inbox.empty():
            return self._inbox.get_nowait()
        try:
            return await asyncio.wait_for(
                self._inbox.get(), timeout=self._seconds_until_deadline()
            )
        except asyncio.TimeoutError:
            return None

    async def _run(self) -> None:
        while True:
            message = await self._next_message()
            try:
                if message is None:
                    if await self._on_deadline():
                        return
                    continue
                if isinstance(message, _Stop):
                    await self._shutdown([message.reply])
                    return
                await self._handle(message)
            except Exception as e:
                log.error(
                    "click_aggregator_message_failed",
                    link_id=self.link_id,
                    message_type=type(message).__name__,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                reply = getattr(message, "reply", None)
                if reply is not None and not reply.done():
                    reply.set_exception(e)

    async def _handle(self, message: Any) -> None:
        if isinstance(message, _Click):
            await self._ingest(message.event)
        elif isinstance(message, _Flush):
            aggregate = await self._close_current(explicit=True)
            message.reply.set_result(aggregate)
        elif isinstance(message, _Subscribe):
            subscription = message.subscription
            subscription._push(self._snapshot_message())
            self._subscribers[subscription.subscriber_id] = subscription
            message.reply.set_result(subscription)
            log.info(
                "click_stream_subscribed",
                link_id=self.link_id,
                subscriber_id=subscription.subscriber_id,
                subscribers=len(self._subscribers),
            )
        elif isinstance(message, _Unsubscribe):
            self._subscribers.pop(message.subscriber_id, None)
        elif isinstance(message, _Snapshot):
            message.reply.set_result(self._views())

    async def _on_deadline(self) -> bool:
        """Handle a timer expiry. Returns True when the actor retired."""
        now = self._clock()
        if self._current is not None:
            if now >= self._current.end_ms:
                await self._close_current()
            return False
        if (
            now - self.last_activity_ms >= self.idle_timeout_ms
            and not self._subscribers
            and self._inbox.empty()
            and not self._deferred
        ):
            self.stopped = True
            log.info("click_aggregator_retired", link_id=self.link_id)
            if self._on_retire is not None:
                self._on_retire(self)
            return True
        return False

    async def _ingest(self, event: ClickEvent) -> None:
        self.last_activity_ms = self._clock()
        ts = event.timestamp_ms

        if ts < self.watermark_ms:
            self._drop_late(event)
            return

        current = self._current
        if current is not None and ts >= current.end_ms:
            await self._close_current()
            current = None
        elif current is not None and ts < current.start_ms:
            self._drop_late(event)
            return

        if current is None:
            window_start = bucket_start_ms(ts, self.bucket_ms)
            current = Bucket(
                start_ms=max(window_start, self.watermark_ms),
                end_ms=bucket_end_ms(window_start, self.bucket_ms),
            )
            self._current = current

        self._count(current, event)

    def _count(self, bucket: Bucket, event: ClickEvent) -> None:
        bucket.add(event)
        if should_sample("click_ingested"):
            log.debug(
                "click_ingested",
                link_id=self.link_id,
                bucket_start_ms=bucket.start_ms,
                region=event.region_code,
                device=event.device_class,
            )
        self._broadcast(
            AggregateMessage(
                type="delta",
                link_id=self.link_id,
                bucket_start_ms=bucket.start_ms,
                counts=[
                    CountEntry(
                        region_code=event.region_code,
                        device_class=event.device_class,
                        count=1,
                    )
                ],
            )
        )

    def _drop_late(self, event: ClickEvent) -> None:
        self.late_dropped += 1
        log.warning(
            "click_dropped_late",
            link_id=self.link_id,
            timestamp_ms=event.timestamp_ms,
            watermark_ms=self.watermark_ms,
        )

    def _drain_in_flight(self, bucket: Bucket) -> None:
        """Apply clicks already queued for the closing bucket; defer the rest."""
        while True:
            try:
                message = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(message, _Click) and bucket.contains(message.event.timestamp_ms):
                self._count(bucket, message.event)
            else:
                self._deferred.append(message)

    async def _close_current(self, *, explicit: bool = False) -> Optional[ClickAggregateDoc]:
        bucket = self._current
        if bucket is None:
            return None

        bucket.state = BucketState.CLOSING
        self._drain_in_flight(bucket)
        if explicit:
            # Closing before the window ends: the rest of the window becomes
            # a new bucket starting where this one stops
            bucket.end_ms = min(
                bucket.end_ms, max(self._clock(), bucket.max_timestamp_ms + 1)
            )

        aggregate = bucket.to_aggregate(self.link_id)
        try:
            await self._sink.save(aggregate)
        except Exception as e:
            log.error(
                "click_aggregate_save_failed",
                link_id=self.link_id,
                bucket_start_ms=bucket.start_ms,
                total=bucket.total,
                error=str(e),
                error_type=type(e).__name__,
            )

        bucket.state = BucketState.FLUSHED
        self._current = None
        self._recent.append(bucket)
        self.watermark_ms = bucket.end_ms
        log.info(
            "click_bucket_flushed",
            link_id=self.link_id,
            bucket_start_ms=bucket.start_ms,
            bucket_end_ms=bucket.end_ms,
            total=bucket.total,
            explicit=explicit,
        )
        self._broadcast(
            AggregateMessage(
                type="flushed",
                link_id=self.link_id,
                bucket_start_ms=bucket.start_ms,
                counts=bucket.entries(),
            )
        )
        return aggregate

    def _views(self) -> list[BucketView]:
        views = [bucket.view() for bucket in self._recent]
        if self._current is not None:
            views.append(self._current.view())
        return views

    def _snapshot_message(self) -> AggregateMessage:
        return AggregateMessage(type="snapshot", link_id=self.link_id, buckets=self._views())

    def _broadcast(self, message: AggregateMessage) -> None:
        for subscriber_id, subscription in list(self._subscribers.items()):
            if not subscription._push(message):
                del self._subscribers[subscriber_id]
                if subscription.overflowed:
                    log.warning(
                        "click_stream_subscriber_overflow",
                        link_id=self.link_id,
                        subscriber_id=subscriber_id,
                    )

    async def _shutdown(self, stop_replies: list[asyncio.Future]) -> None:
        self.stopped = True
        while not self._inbox.empty() or self._deferred:
            message = self._deferred.popleft() if self._deferred else self._inbox.get_nowait()
            if isinstance(message, _Click):
                await self._ingest(message.event)
            elif isinstance(message, _Stop):
                # Concurrent stop() callers all wait for the same shutdown
                stop_replies.append(message.reply)
            elif hasattr(message, "reply") and not message.reply.done():
                await self._handle(message)
        await self._close_current()
        for subscription in self._subscribers.values():
            subscription._terminate()
        self._subscribers.clear()
        for reply in stop_replies:
            if not reply.done():
                reply.set_result(None)
        log.info("click_aggregator_stopped", link_id=self.link_id)


# ── Registry ─────────────────────────────────────────────────────────────────


class ClickAggregatorRegistry:
    """Routes every click for a link to that link's single actor."""

    def __init__(
        self,
        sink: AggregateSink,
        settings: AggregatorSettings,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._sink = sink
        self.settings = settings
        self._clock = clock
        self._actors: dict[str, ClickAggregatorActor] = {}
        # Watermarks of retired actors, so a successor never reopens a
        # bucket its predecessor already finalized
        self._watermarks: dict[str, int] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._actors)

    def get(self, link_id: str) -> Optional[ClickAggregatorActor]:
        return self._actors.get(link_id)

    def get_or_create(self, link_id: str) -> ClickAggregatorActor:
        # No await between lookup and insert: one actor per link, always
        actor = self._actors.get(link_id)
        if actor is None or actor.stopped:
            actor = ClickAggregatorActor(
                link_id,
                self._sink,
                self.settings,
                watermark_ms=self._watermarks.pop(link_id, 0),
                clock=self._clock,
                on_retire=self._retire,
            )
            actor.start()
            self._actors[link_id] = actor
        return actor

    def _retire(self, actor: ClickAggregatorActor) -> None:
        if self._actors.get(actor.link_id) is actor:
            del self._actors[actor.link_id]
            self._watermarks[actor.link_id] = actor.watermark_ms

    def dispatch(self, event: ClickEvent) -> None:
        """Non-blocking click hand-off used by the resolver."""
        if self._closed:
            return
        self.get_or_create(event.link_id).offer(event)

    async def flush(self, link_id: str) -> Optional[ClickAggregateDoc]:
        actor = self._actors.get(link_id)
        if actor is None:
            return None
        return await actor.flush()

    async def subscribe(self, link_id: str) -> Subscription:
        return await self.get_or_create(link_id).subscribe()

    async def snapshot(self, link_id: str) -> list[BucketView]:
        actor = self._actors.get(link_id)
        if actor is None:
            return []
        return await actor.snapshot()

    async def shutdown(self) -> None:
        self._closed = True
        actors = list(self._actors.values())
        self._actors.clear()
        await asyncio.gather(*(actor.stop() for actor in actors), return_exceptions=True)
        log.info("click_aggregators_shutdown", actors=len(actors))
