"""Evaluation queue contracts shared by the RabbitMQ and in-process runtimes."""

from __future__ import annotations

from enum import Enum
from typing import Protocol

from schemas.models.job import EvaluationJob


class JobOutcome(str, Enum):
    OK = "ok"
    RETRY = "retry"
    FATAL = "fatal"


class JobHandler(Protocol):
    async def on_job(self, job: EvaluationJob) -> JobOutcome: ...

    async def on_fatal(self, job: EvaluationJob, reason: str) -> None: ...


class EvaluationQueue(Protocol):
    def enqueue(self, job: EvaluationJob) -> None:
        """Hand *job* to the queue without waiting for the publish."""
        ...

    async def start(self, handler: JobHandler) -> None: ...

    async def close(self) -> None: ...
