"""Kafka envelope + producer helper.

This module standardizes the structure of run lifecycle events published from
the outbox.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from statuscheck.common.config import settings


class EventEnvelope(BaseModel):
    """Run lifecycle event as published to Kafka.

    `aggregate_id` is the run id and doubles as the partition key, so all events
    of one run stay ordered.
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]

    def to_bytes(self) -> bytes:
        return json.dumps(self.model_dump(), separators=(",", ":")).encode("utf-8")

    def headers(self) -> list[tuple[str, bytes]]:
        return [
            ("event_type", self.event_type.encode("utf-8")),
            ("trace_id", self.trace_id.encode("utf-8")),
        ]


class KafkaBus:
    """Lazy Kafka producer wrapper used by the outbox publisher."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=settings.kafka_bootstrap_servers,
                client_id=settings.service_name,
                acks="all",
                enable_idempotence=True,
            )
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            event.to_bytes(),
            key=event.aggregate_id.encode("utf-8"),
            headers=event.headers(),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None
