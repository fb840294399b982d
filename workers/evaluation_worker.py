"""
Evaluation worker.

Consumes evaluation jobs from RabbitMQ and runs each through the durable
workflow, at most ``max_in_flight_jobs`` at a time. The same process runs
the staleness sweep that re-queues destinations whose verdict has aged out.
SIGINT/SIGTERM stop consuming, let the sweep finish its batch, and close
connections; unacknowledged jobs are redelivered to another worker and
resume from their checkpoints.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Optional

from pymongo.asynchronous.mongo_client import AsyncMongoClient

from config import AppSettings
from repositories import ensure_indexes
from services.evaluation.runtime import (
    build_evaluation_queue,
    build_evaluation_runtime,
    build_repositories,
)
from services.evaluation.sweeper import StalenessSweeper
from shared.logging import get_logger
from shared.rate_limit import TokenBucket

log = get_logger(__name__)


def install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass


async def run_worker(
    settings: AppSettings, stop: Optional[asyncio.Event] = None
) -> None:
    stop = stop or asyncio.Event()

    mongo_client: AsyncMongoClient = AsyncMongoClient(settings.db.mongodb_uri)
    db = mongo_client[settings.db.db_name]
    await ensure_indexes(db)
    log.info("worker_mongodb_ready", db=settings.db.db_name)

    queue = await build_evaluation_queue(settings.queue)
    runtime = build_evaluation_runtime(db, settings)
    _, evaluations = build_repositories(db)
    sweeper = StalenessSweeper(
        evaluations,
        queue,
        TokenBucket(
            settings.evaluation.sweep_rate_per_second, settings.evaluation.sweep_burst
        ),
        settings.evaluation,
    )

    try:
        await queue.start(runtime.handler)
        log.info(
            "evaluation_worker_started",
            queue=type(queue).__name__,
            max_in_flight=settings.queue.max_in_flight_jobs,
        )
        await sweeper.run_forever(stop)
    finally:
        log.info("evaluation_worker_stopping")
        await queue.close()
        await runtime.aclose()
        await mongo_client.close()
        log.info("evaluation_worker_stopped")


async def main(settings: Optional[AppSettings] = None) -> None:
    settings = settings or AppSettings()
    stop = asyncio.Event()
    install_signal_handlers(stop)
    await run_worker(settings, stop)
