"""Typed async Kafka producer wrapper."""

from __future__ import annotations

import structlog
from aiokafka import AIOKafkaProducer
from pydantic import BaseModel

from carebridge_schema import ExtractionRequest, OperationalAlert

from .config import KafkaConfig

logger = structlog.get_logger()


class EventPublisher:
    """Thin async wrapper around :class:`AIOKafkaProducer`.

    Serializes pydantic models to JSON and routes them to the configured
    topic.  Records are keyed by a deterministic identifier so redelivered
    work lands on the same partition.
    """

    def __init__(self, config: KafkaConfig) -> None:
        self._config = config
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._config.bootstrap_servers,
            acks=self._config.producer_acks,
            compression_type=self._config.producer_compression,
        )
        await self._producer.start()
        logger.info("kafka_producer_started", servers=self._config.bootstrap_servers)

    async def stop(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
            logger.info("kafka_producer_stopped")

    async def publish(self, topic: str, key: str, payload: BaseModel) -> None:
        assert self._producer is not None, "Producer not started"
        await self._producer.send_and_wait(
            topic,
            value=payload.model_dump_json().encode("utf-8"),
            key=key.encode("utf-8"),
        )
        logger.debug("event_published", topic=topic, key=key)

    async def send_extraction_request(self, request: ExtractionRequest) -> None:
        """Publish an extraction request, keyed by message id."""
        await self.publish(self._config.extraction_topic, request.message_id, request)

    async def send_alert(self, alert: OperationalAlert) -> None:
        """Publish an operational alert, keyed by its subject."""
        await self.publish(self._config.alerts_topic, alert.subject, alert)
