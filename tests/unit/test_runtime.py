"""Unit tests for evaluation pipeline wiring."""

from unittest.mock import AsyncMock, MagicMock

from config import AppSettings, EvaluationSettings, InferenceSettings, QueueSettings
from infrastructure.queue.local import LocalEvaluationQueue
from infrastructure.queue.rabbitmq import RabbitMQEvaluationQueue
from services.evaluation.handler import EvaluationJobHandler
from services.evaluation.runtime import build_evaluation_queue, build_evaluation_runtime


def _settings(monkeypatch, **evaluation) -> AppSettings:
    monkeypatch.setenv("MONGODB_URI", "mongodb://localhost:27017/")
    return AppSettings(
        evaluation=EvaluationSettings(**evaluation),
        inference=InferenceSettings(inference_url="https://infer.example"),
    )


async def test_local_queue_without_rabbitmq_url():
    queue = await build_evaluation_queue(QueueSettings(rabbitmq_url=None))
    assert isinstance(queue, LocalEvaluationQueue)


async def test_rabbitmq_queue_connects(mocker):
    connect = mocker.patch.object(RabbitMQEvaluationQueue, "connect", new=AsyncMock())
    queue = await build_evaluation_queue(QueueSettings(rabbitmq_url="amqp://localhost/"))
    assert isinstance(queue, RabbitMQEvaluationQueue)
    connect.assert_awaited_once()


async def test_runtime_without_renderer(monkeypatch):
    runtime = build_evaluation_runtime(MagicMock(), _settings(monkeypatch, render_enabled=False))
    assert isinstance(runtime.handler, EvaluationJobHandler)
    assert runtime.renderer is None
    # Fetch client plus inference client
    assert len(runtime.http_clients) == 2
    await runtime.aclose()


async def test_runtime_closes_renderer(monkeypatch):
    runtime = build_evaluation_runtime(MagicMock(), _settings(monkeypatch, render_enabled=True))
    runtime.renderer = MagicMock(aclose=AsyncMock())
    await runtime.aclose()
    runtime.renderer.aclose.assert_awaited_once()
