"""
Unit tests for the shared/ utility modules.

Covers:
- shared.time_bucket_utils (bucket_start_ms, bucket_end_ms, bucket_starts_between)
- shared.datetime_utils    (ensure_utc)
- shared.ip_utils          (get_client_ip, get_edge_country)
- shared.device            (classify_device)
- shared.rate_limit        (TokenBucket)
- shared.logging           (should_sample, hash_ip, redaction)
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from shared import logging_config
from shared.datetime_utils import ensure_utc
from shared.device import classify_device
from shared.ip_utils import get_client_ip, get_edge_country
from shared.logging import SAMPLING_RATES, hash_ip, should_sample
from shared.rate_limit import TokenBucket
from shared.time_bucket_utils import (
    bucket_end_ms,
    bucket_start_ms,
    bucket_starts_between,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_request(headers: dict, client_host: str = "10.0.0.1") -> MagicMock:
    request = MagicMock()
    request.headers = headers
    request.client = MagicMock(host=client_host)
    return request


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# time_bucket_utils
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "timestamp, expected",
    [(0, 0), (59_999, 0), (60_000, 60_000), (61_234, 60_000)],
    ids=["epoch", "last_ms", "boundary", "inside"],
)
def test_bucket_start_ms(timestamp, expected):
    assert bucket_start_ms(timestamp, 60_000) == expected


def test_bucket_start_rejects_zero_width():
    with pytest.raises(ValueError):
        bucket_start_ms(1000, 0)


def test_bucket_end_is_exclusive():
    assert bucket_end_ms(60_000, 60_000) == 120_000


def test_bucket_starts_between_covers_partial_edges():
    assert bucket_starts_between(30_000, 150_000, 60_000) == [0, 60_000, 120_000]


def test_bucket_starts_between_empty_for_reversed_range():
    assert bucket_starts_between(10, 5, 60_000) == []


# ---------------------------------------------------------------------------
# datetime_utils
# ---------------------------------------------------------------------------


def test_ensure_utc_attaches_timezone_to_naive():
    naive = datetime(2025, 1, 1, 12)
    assert ensure_utc(naive).tzinfo is timezone.utc


# ---------------------------------------------------------------------------
# ip_utils
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "headers, expected_ip",
    [
        ({"CF-Connecting-IP": "1.1.1.1"}, "1.1.1.1"),
        ({"X-Forwarded-For": "2.2.2.2, 10.0.0.2"}, "2.2.2.2"),
        ({}, "10.0.0.1"),
    ],
    ids=["cloudflare", "forwarded_first", "socket"],
)
def test_get_client_ip(headers, expected_ip):
    assert get_client_ip(_make_request(headers)) == expected_ip


def test_get_client_ip_no_client_returns_empty():
    request = _make_request({})
    request.client = None
    assert get_client_ip(request) == ""


@pytest.mark.parametrize(
    "headers, expected",
    [
        ({"CF-IPCountry": "de"}, "DE"),
        ({"X-Country-Code": "US"}, "US"),
        ({"CF-IPCountry": "XX"}, None),
        ({"CF-IPCountry": "T1"}, None),
        ({}, None),
    ],
    ids=["cloudflare", "generic", "unknown", "tor", "absent"],
)
def test_get_edge_country(headers, expected):
    assert get_edge_country(_make_request(headers)) == expected


# ---------------------------------------------------------------------------
# device
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "user_agent, expected",
    [
        ("", "unknown"),
        (
            "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)",
            "bot",
        ),
        (
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
            "mobile",
        ),
        (
            "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
            "tablet",
        ),
        (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
            "desktop",
        ),
    ],
    ids=["empty", "googlebot", "iphone", "ipad", "windows_chrome"],
)
def test_classify_device(user_agent, expected):
    assert classify_device(user_agent) == expected


# ---------------------------------------------------------------------------
# rate_limit
# ---------------------------------------------------------------------------


class TestTokenBucket:
    def test_burst_up_to_capacity(self):
        bucket = TokenBucket(rate=1.0, capacity=3, clock=FakeClock())
        assert [bucket.try_acquire() for _ in range(4)] == [True, True, True, False]

    def test_refills_over_time(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2.0, capacity=2, clock=clock)
        bucket.try_acquire()
        bucket.try_acquire()
        assert not bucket.try_acquire()
        clock.now = 0.5
        assert bucket.try_acquire()

    def test_never_exceeds_capacity(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=100.0, capacity=5, clock=clock)
        clock.now = 60.0
        assert bucket.available == 5

    @pytest.mark.parametrize("rate, capacity", [(0, 1), (1.0, 0)], ids=["rate", "capacity"])
    def test_rejects_invalid_parameters(self, rate, capacity):
        with pytest.raises(ValueError):
            TokenBucket(rate=rate, capacity=capacity)

    async def test_acquire_waits_for_refill(self):
        bucket = TokenBucket(rate=50.0, capacity=1)
        await bucket.acquire()
        started = datetime.now(timezone.utc)
        await bucket.acquire()
        assert datetime.now(timezone.utc) - started >= timedelta(milliseconds=5)


# ---------------------------------------------------------------------------
# logging
# ---------------------------------------------------------------------------


class TestSampling:
    def test_unknown_event_always_sampled(self):
        assert should_sample("some_rare_event") is True

    def test_zero_rate_never_sampled(self, monkeypatch):
        monkeypatch.setitem(SAMPLING_RATES, "url_redirect", 0.0)
        assert not any(should_sample("url_redirect") for _ in range(50))

    def test_full_rate_always_sampled(self, monkeypatch):
        monkeypatch.setitem(SAMPLING_RATES, "click_ingested", 1.0)
        assert all(should_sample("click_ingested") for _ in range(50))


class TestHashIp:
    def test_none_passes_through(self):
        assert hash_ip(None) is None

    def test_plain_in_development(self, monkeypatch):
        monkeypatch.setattr(logging_config, "_is_production", False)
        assert hash_ip("203.0.113.7") == "203.0.113.7"

    def test_hashed_in_production(self, monkeypatch):
        monkeypatch.setattr(logging_config, "_is_production", True)
        hashed = hash_ip("203.0.113.7")
        assert hashed != "203.0.113.7"
        assert len(hashed) == 16


class TestRedaction:
    def test_secrets_redacted(self):
        event = {"event": "x", "api_key": "abc", "password": "pw", "link_id": "l1"}
        result = logging_config.redact_sensitive_fields(None, "info", event)
        assert result["api_key"] == "***REDACTED***"
        assert result["password"] == "***REDACTED***"
        assert result["link_id"] == "l1"

    def test_identifier_key_suffix_kept(self):
        event = {"event": "x", "cache_key": "link_snapshot:abc"}
        result = logging_config.redact_sensitive_fields(None, "info", event)
        assert result["cache_key"] == "link_snapshot:abc"
