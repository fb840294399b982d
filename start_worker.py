#!/usr/bin/env python3
"""
Evaluation Worker Runner

This script starts the asynchronous evaluation worker that consumes
destination evaluation jobs from RabbitMQ, scores each destination and
records its verdict in MongoDB. It also runs the staleness sweep.
"""

import asyncio
import os
import sys

# Ensure project root is on the path
ROOT_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, ROOT_DIR)

from config import AppSettings  # noqa: E402
from shared.logging import get_logger, setup_logging  # noqa: E402
from workers.evaluation_worker import main as worker_main  # noqa: E402


def main():
    """Main function to start the evaluation worker"""
    settings = AppSettings()
    setup_logging(settings.logging, production=settings.is_production)
    log = get_logger("start_worker")

    if not settings.queue.rabbitmq_url:
        log.warning(
            "worker_without_rabbitmq",
            detail="jobs enqueued by the API will not reach this process",
        )

    try:
        asyncio.run(worker_main(settings))
    except KeyboardInterrupt:
        log.info("worker_stopped_by_user")
    except Exception as e:
        log.error("worker_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
