"""
Wiring for the evaluation pipeline.

Both the ASGI app (when running without RabbitMQ) and the standalone worker
need the same set of objects: a queue, the workflow with its fetcher,
renderer and scorer, and the handler that connects them. build_* functions
here construct them from AppSettings; EvaluationRuntime.aclose() releases
whatever they opened.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from pymongo.asynchronous.database import AsyncDatabase

from config import AppSettings, QueueSettings
from infrastructure.fetcher import DestinationFetcher
from infrastructure.http_client import HttpClient
from infrastructure.inference.http_scorer import HttpInferenceScorer
from infrastructure.queue.base import BaseEvaluationQueue
from infrastructure.queue.local import LocalEvaluationQueue
from infrastructure.queue.rabbitmq import RabbitMQEvaluationQueue
from infrastructure.render.playwright_renderer import PlaywrightRenderer
from infrastructure.render.protocol import PageRenderer
from repositories import (
    EvaluationRepository,
    JobCheckpointRepository,
    LinkRepository,
)
from repositories.indexes import EVALUATION_JOBS, EVALUATION_RECORDS, GEO_RULES, LINKS
from services.evaluation.handler import EvaluationJobHandler
from services.evaluation.scoring import ContentScoringService
from services.evaluation.workflow import EvaluationWorkflow
from shared.logging import get_logger

log = get_logger(__name__)


async def build_evaluation_queue(settings: QueueSettings) -> BaseEvaluationQueue:
    """RabbitMQ when a URL is configured, otherwise the in-process queue."""
    if settings.rabbitmq_url:
        queue = RabbitMQEvaluationQueue(settings)
        await queue.connect()
        return queue
    log.info("rabbitmq_not_configured_using_local_queue")
    return LocalEvaluationQueue(settings)


def build_repositories(db: AsyncDatabase) -> tuple[LinkRepository, EvaluationRepository]:
    return (
        LinkRepository(db[LINKS], db[GEO_RULES]),
        EvaluationRepository(db[EVALUATION_RECORDS]),
    )


@dataclass
class EvaluationRuntime:
    workflow: EvaluationWorkflow
    handler: EvaluationJobHandler
    renderer: Optional[PageRenderer] = None
    http_clients: list[HttpClient] = field(default_factory=list)

    async def aclose(self) -> None:
        if self.renderer is not None:
            await self.renderer.aclose()
        for client in self.http_clients:
            await client.aclose()


def build_evaluation_runtime(db: AsyncDatabase, settings: AppSettings) -> EvaluationRuntime:
    evaluation = settings.evaluation
    links, evaluations = build_repositories(db)

    fetch_client = HttpClient(evaluation.fetch_timeout_seconds, follow_redirects=True)
    clients = [fetch_client]

    scorer = None
    if settings.inference.inference_url:
        inference_client = HttpClient(settings.inference.inference_timeout_seconds)
        clients.append(inference_client)
        scorer = HttpInferenceScorer(
            settings.inference.inference_url,
            settings.inference.inference_api_key,
            inference_client,
        )

    renderer = PlaywrightRenderer() if evaluation.render_enabled else None

    workflow = EvaluationWorkflow(
        JobCheckpointRepository(db[EVALUATION_JOBS]),
        evaluations,
        links,
        DestinationFetcher(fetch_client, evaluation.max_content_bytes),
        ContentScoringService(scorer, evaluation.healthy_score_threshold),
        evaluation,
        renderer,
    )
    return EvaluationRuntime(
        workflow=workflow,
        handler=EvaluationJobHandler(workflow),
        renderer=renderer,
        http_clients=clients,
    )
