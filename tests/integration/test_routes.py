"""Integration tests for the redirect, link event and analytics routes."""

from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from config import AggregatorSettings
from errors import register_error_handlers
from routes.analytics_routes import router as analytics_router
from routes.link_event_routes import router as link_event_router
from routes.redirect_routes import router as redirect_router
from schemas.models.click import ClickAggregateDoc
from schemas.models.evaluation import Verdict
from services.click_aggregator import ClickAggregatorRegistry
from services.link_events import LinkEventService
from services.resolver import RedirectResolver
from tests.fakes import (
    LINK_ID,
    FakeAggregateRepository,
    FakeEvaluationRepository,
    FakeLinkRepository,
    FakeQueue,
    make_link,
    make_record,
    make_rule,
)

IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
DE_DEST = "https://de.example"


class Stores:
    def __init__(self) -> None:
        self.links = FakeLinkRepository()
        self.evaluations = FakeEvaluationRepository()
        self.aggregates = FakeAggregateRepository()
        self.queue = FakeQueue()
        self.links.add(make_link(), [make_rule("DE", DE_DEST, 1)])


def _build_test_app(stores: Stores) -> FastAPI:
    """Minimal app wired to in-memory stores; no network connections."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        aggregators = ClickAggregatorRegistry(
            stores.aggregates, AggregatorSettings(bucket_seconds=60)
        )
        app.state.aggregators = aggregators
        app.state.click_aggregates = stores.aggregates
        app.state.geoip = None
        app.state.resolver = RedirectResolver(
            stores.links, stores.evaluations, aggregators.dispatch
        )
        app.state.link_events = LinkEventService(stores.links, stores.queue)
        yield
        await aggregators.shutdown()

    app = FastAPI(lifespan=lifespan)
    register_error_handlers(app)
    app.include_router(link_event_router)
    app.include_router(analytics_router)
    app.include_router(redirect_router)
    return app


@pytest.fixture
def stores() -> Stores:
    return Stores()


@pytest.fixture
def client(stores):
    with TestClient(_build_test_app(stores)) as c:
        yield c


def _link_payload() -> dict:
    return {
        "linkId": LINK_ID,
        "shortCode": "abc123",
        "createdAt": "2025-01-01T12:00:00Z",
        "defaultDestination": "https://default.example",
    }


# ── Redirect ──────────────────────────────────────────────────────────────────


class TestRedirect:
    def test_edge_country_selects_rule(self, client):
        resp = client.get(
            "/abc123", headers={"CF-IPCountry": "de"}, follow_redirects=False
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == DE_DEST
        assert resp.headers["X-Evaluation-Hint"] == "unknown"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_unknown_region_gets_default(self, client):
        resp = client.get("/abc123", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "https://default.example"

    def test_dead_rule_skipped(self, client, stores):
        stores.evaluations.add(make_record(DE_DEST, Verdict.DEAD))
        resp = client.get("/abc123", headers={"CF-IPCountry": "DE"}, follow_redirects=False)
        assert resp.headers["location"] == "https://default.example"

    def test_unknown_short_code_404(self, client):
        resp = client.get("/nope", follow_redirects=False)
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"

    def test_redirect_counts_click(self, client):
        client.get(
            "/abc123",
            headers={"CF-IPCountry": "DE", "User-Agent": IPHONE_UA},
            follow_redirects=False,
        )
        body = client.get(f"/analytics/{LINK_ID}/live").json()
        assert body["type"] == "snapshot"
        [bucket] = body["buckets"]
        assert bucket["state"] == "open"
        assert bucket["counts"] == [
            {"region_code": "DE", "device_class": "mobile", "count": 1}
        ]


# ── Link events ───────────────────────────────────────────────────────────────


class TestLinkEvents:
    def test_created_enqueues_each_destination(self, client, stores):
        resp = client.post("/internal/links/created", json={"link": _link_payload()})
        assert resp.status_code == 202
        body = resp.json()
        assert body["jobs_enqueued"] == 2
        assert body["destinations"] == ["https://default.example", DE_DEST]
        assert len(stores.queue.jobs) == 2

    def test_updated(self, client, stores):
        resp = client.post(
            "/internal/links/updated",
            json={"link": _link_payload(), "changedFields": ["geoRules"]},
        )
        assert resp.status_code == 202
        assert resp.json()["jobs_enqueued"] == 2

    def test_deleted_enqueues_nothing(self, client, stores):
        resp = client.post("/internal/links/abc123/deleted")
        assert resp.status_code == 202
        assert resp.json()["jobs_enqueued"] == 0
        assert stores.queue.jobs == []

    def test_invalid_payload_rejected(self, client):
        resp = client.post("/internal/links/created", json={"link": {"linkId": "x"}})
        assert resp.status_code in (400, 422)


# ── Analytics ─────────────────────────────────────────────────────────────────


class TestAnalytics:
    def test_live_for_idle_link_is_empty(self, client):
        body = client.get(f"/analytics/{LINK_ID}/live").json()
        assert body["buckets"] == []

    def test_buckets_with_gaps_filled(self, client, stores):
        aggregate = ClickAggregateDoc.from_counts(
            LINK_ID, 60_000, 120_000, {("DE", "mobile"): 3}
        )
        stores.aggregates.saved[aggregate.id] = aggregate
        resp = client.get(
            f"/analytics/{LINK_ID}/buckets",
            params={"start_ms": 0, "end_ms": 179_999, "fill_gaps": "true"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert [b["bucket_start_ms"] for b in body["buckets"]] == [0, 60_000, 120_000]
        assert [b["total"] for b in body["buckets"]] == [0, 3, 0]
        assert body["total"] == 3
        assert body["bucket_ms"] == 60_000

    def test_buckets_without_fill(self, client):
        resp = client.get(
            f"/analytics/{LINK_ID}/buckets", params={"start_ms": 0, "end_ms": 179_999}
        )
        assert resp.json()["buckets"] == []

    def test_reversed_range_rejected(self, client):
        resp = client.get(
            f"/analytics/{LINK_ID}/buckets", params={"start_ms": 10, "end_ms": 5}
        )
        assert resp.status_code == 400
        assert resp.json()["field"] == "end_ms"

    def test_gap_fill_range_limited(self, client):
        resp = client.get(
            f"/analytics/{LINK_ID}/buckets",
            params={"start_ms": 0, "end_ms": 60_000 * 20_000, "fill_gaps": "true"},
        )
        assert resp.status_code == 400

    def test_stream_sends_snapshot_then_deltas(self, client):
        with client.websocket_connect(f"/analytics/{LINK_ID}/stream") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert snapshot["buckets"] == []

            client.get("/abc123", headers={"CF-IPCountry": "DE"}, follow_redirects=False)
            delta = ws.receive_json()
            assert delta["type"] == "delta"
            assert delta["link_id"] == LINK_ID
            assert delta["counts"][0]["region_code"] == "DE"
            assert delta["counts"][0]["count"] == 1
