"""Unit tests for the MongoDB document models."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from bson import ObjectId

from schemas.models.base import MongoBaseModel
from schemas.models.click import (
    BucketState,
    ClickAggregateDoc,
    ClickEvent,
    aggregate_id,
)
from schemas.models.evaluation import EvaluationRecordDoc, Verdict
from schemas.models.job import EvaluationJob, JobCheckpoint, JobState
from schemas.models.link import GeoRuleDoc, LinkStatus, normalise_region
from tests.fakes import LINK_ID, T0, make_job, make_link


# ── Links ────────────────────────────────────────────────────────────────────


class TestLinkDoc:
    def test_link_id_is_string_of_object_id(self):
        link = make_link()
        assert isinstance(link.id, ObjectId)
        assert link.link_id == LINK_ID

    def test_is_active(self):
        assert make_link().is_active
        assert not make_link(status=LinkStatus.DISABLED).is_active

    def test_to_mongo_stores_enum_value(self):
        doc = make_link(status=LinkStatus.DISABLED).to_mongo()
        assert doc["status"] == "disabled"
        assert doc["_id"] == ObjectId(LINK_ID)

    def test_from_mongo_none(self):
        assert MongoBaseModel.from_mongo(None) is None


@pytest.mark.parametrize(
    "raw, expected",
    [(" us ", "US"), ("de", "DE"), (None, ""), ("", "")],
    ids=["padded", "lower", "none", "empty"],
)
def test_normalise_region(raw, expected):
    assert normalise_region(raw) == expected


def test_geo_rule_region_uppercased():
    rule = GeoRuleDoc(link_id=LINK_ID, region_code="eu", destination="https://e", priority=1)
    assert rule.region_code == "EU"


# ── Evaluation records ───────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "verdict, routable",
    [
        (Verdict.HEALTHY, True),
        (Verdict.DEGRADED, True),
        (Verdict.UNKNOWN, True),
        (Verdict.DEAD, False),
    ],
    ids=["healthy", "degraded", "unknown", "dead"],
)
def test_verdict_is_routable(verdict, routable):
    assert verdict.is_routable is routable


class TestEvaluationRecordDoc:
    def test_destination_is_id(self):
        record = EvaluationRecordDoc(_id="https://a.example", last_checked_at=T0)
        assert record.destination_url == "https://a.example"
        assert record.verdict is Verdict.UNKNOWN
        assert record.to_mongo()["_id"] == "https://a.example"

    def test_score_bounds_enforced(self):
        with pytest.raises(ValueError):
            EvaluationRecordDoc(_id="https://a", last_checked_at=T0, quality_score=101)


# ── Jobs ─────────────────────────────────────────────────────────────────────


class TestEvaluationJob:
    def test_job_id_stable_across_attempts(self):
        job = make_job()
        assert job.next_attempt().job_id == job.job_id
        assert job.next_attempt().attempt == 2

    def test_job_id_differs_per_enqueue(self):
        later = make_job().model_copy(
            update={"enqueued_at": datetime(2025, 1, 2, tzinfo=timezone.utc)}
        )
        assert later.job_id != make_job().job_id

    def test_message_decodes_to_same_job(self):
        job = make_job(attempt=3)
        decoded = EvaluationJob.from_message(job.to_message())
        assert decoded == job
        assert decoded.job_id == job.job_id

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            make_job(attempt=0)


@pytest.mark.parametrize(
    "state, terminal",
    [
        (JobState.FETCHING, False),
        (JobState.PERSISTING, False),
        (JobState.DONE, True),
        (JobState.FAILED, True),
        (JobState.ABANDONED, True),
    ],
)
def test_job_state_terminal(state, terminal):
    assert state.is_terminal is terminal


def test_checkpoint_to_mongo_stores_state_value():
    job = make_job()
    checkpoint = JobCheckpoint(
        _id=job.job_id,
        job=job,
        state=JobState.SCORING,
        verdict=Verdict.HEALTHY,
        started_at=T0,
        updated_at=T0,
    )
    doc = checkpoint.to_mongo()
    assert doc["_id"] == job.job_id
    assert doc["state"] == "scoring"
    assert doc["verdict"] == "healthy"
    assert JobCheckpoint.from_mongo(doc).state is JobState.SCORING


# ── Clicks ───────────────────────────────────────────────────────────────────


class TestClickEvent:
    def test_region_normalised(self):
        event = ClickEvent(link_id="l", region_code="eu", device_class="mobile", timestamp_ms=1)
        assert event.region_code == "EU"

    def test_missing_region_becomes_unknown(self):
        event = ClickEvent(link_id="l", region_code="", device_class="mobile", timestamp_ms=1)
        assert event.region_code == "UNKNOWN"

    def test_frozen(self):
        event = ClickEvent(link_id="l", region_code="US", device_class="bot", timestamp_ms=1)
        with pytest.raises(ValueError):
            event.region_code = "EU"


class TestClickAggregateDoc:
    def test_id_derived_from_link_and_bucket(self):
        agg = ClickAggregateDoc(link_id="l1", bucket_start_ms=60_000, bucket_end_ms=120_000)
        assert agg.id == aggregate_id("l1", 60_000) == "l1:60000"

    def test_from_counts(self):
        agg = ClickAggregateDoc.from_counts(
            "l1",
            0,
            60_000,
            {("EU", "mobile"): 3, ("EU", "desktop"): 2, ("US", "mobile"): 3},
        )
        assert agg.total == 8
        assert agg.counts_by_region() == {"EU": 5, "US": 3}
        assert agg.counts_by_device() == {"desktop": 2, "mobile": 6}

    def test_bucket_state_values(self):
        assert [s.value for s in BucketState] == ["open", "closing", "flushed"]
