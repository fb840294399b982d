"""RabbitMQ evaluation queue built on aio-pika.

Topology:
  <name>        durable work queue, consumed with prefetch = max_in_flight_jobs
  <name>.retry  durable holding queue; each message carries a per-message TTL
                (the backoff) and dead-letters back into <name> when it expires

Messages are acknowledged only after the delivery policy has run, so a
worker crash redelivers the job (at-least-once); the workflow's checkpoint
makes the redelivery resume instead of starting over.
"""

from __future__ import annotations

from functools import partial
from typing import Optional

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from pydantic import ValidationError as PydanticValidationError

from config import QueueSettings
from infrastructure.queue.base import BaseEvaluationQueue
from infrastructure.queue.protocol import JobHandler
from schemas.models.job import EvaluationJob
from shared.logging import get_logger

log = get_logger(__name__)


class RabbitMQEvaluationQueue(BaseEvaluationQueue):
    def __init__(self, settings: QueueSettings) -> None:
        super().__init__(settings)
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None

    @property
    def queue_name(self) -> str:
        return self.settings.evaluation_queue_name

    @property
    def retry_queue_name(self) -> str:
        return f"{self.settings.evaluation_queue_name}.retry"

    async def connect(self) -> None:
        self._connection = await aio_pika.connect_robust(self.settings.rabbitmq_url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self.settings.max_in_flight_jobs)
        self._queue = await self._channel.declare_queue(self.queue_name, durable=True)
        await self._channel.declare_queue(
            self.retry_queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": "",
                "x-dead-letter-routing-key": self.queue_name,
            },
        )
        log.info("rabbitmq_connected", queue=self.queue_name)

    def _message(self, job: EvaluationJob, expiration: Optional[float] = None):
        return aio_pika.Message(
            body=job.to_message(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=job.job_id,
            expiration=expiration,
        )

    async def _publish(self, job: EvaluationJob) -> None:
        if self._channel is None:
            raise RuntimeError("RabbitMQ channel is not connected")
        await self._channel.default_exchange.publish(
            self._message(job), routing_key=self.queue_name
        )

    async def _schedule_retry(self, job: EvaluationJob, delay: float) -> None:
        if self._channel is None:
            raise RuntimeError("RabbitMQ channel is not connected")
        await self._channel.default_exchange.publish(
            self._message(job, expiration=max(delay, 0.001)),
            routing_key=self.retry_queue_name,
        )

    async def start(self, handler: JobHandler) -> None:
        if self._queue is None:
            await self.connect()
        self._consumer_tag = await self._queue.consume(partial(self._on_message, handler))
        log.info("rabbitmq_consuming", queue=self.queue_name)

    async def _on_message(
        self, handler: JobHandler, message: AbstractIncomingMessage
    ) -> None:
        async with message.process():
            try:
                job = EvaluationJob.from_message(message.body)
            except PydanticValidationError as e:
                # Acknowledged and dropped; redelivering a malformed body cannot help
                log.error(
                    "evaluation_message_invalid",
                    message_id=message.message_id,
                    error=str(e),
                )
                return
            await self._deliver(handler, job)

    async def close(self) -> None:
        await self.flush_publishes()
        if self._queue is not None and self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
            self._consumer_tag = None
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
        log.info("rabbitmq_closed")
