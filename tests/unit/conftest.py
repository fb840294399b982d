"""
Unit test configuration.

Patches dotenv so pydantic-settings never reads the project's real .env file
during unit tests. Tests control config exclusively through monkeypatch.setenv().
"""

import pytest

from tests.fakes import (
    FakeAggregateRepository,
    FakeCheckpointRepository,
    FakeEvaluationRepository,
    FakeLinkRepository,
    FakeQueue,
)


@pytest.fixture(autouse=True)
def disable_dotenv_loading(monkeypatch):
    """Prevent pydantic-settings from loading .env files in all unit tests."""
    import pydantic_settings.sources.providers.dotenv as ps_dotenv

    monkeypatch.setattr(ps_dotenv, "dotenv_values", lambda *a, **kw: {})


@pytest.fixture
def links() -> FakeLinkRepository:
    return FakeLinkRepository()


@pytest.fixture
def evaluations() -> FakeEvaluationRepository:
    return FakeEvaluationRepository()


@pytest.fixture
def checkpoints() -> FakeCheckpointRepository:
    return FakeCheckpointRepository()


@pytest.fixture
def aggregates() -> FakeAggregateRepository:
    return FakeAggregateRepository()


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()
