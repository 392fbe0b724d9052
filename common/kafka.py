import logging
from typing import Optional
from confluent_kafka import Producer, Consumer, KafkaException
from pydantic import BaseModel
from common.settings import settings
from common.tracing import get_trace_headers

logger = logging.getLogger(__name__)

TOPIC_WALLET_EVENTS = "wallet_events"

FLUSH_TIMEOUT_SECONDS = 5.0

def get_producer() -> Producer:
    return Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})

def get_consumer(group_id: str, topics: list[str]) -> Consumer:
    c = Consumer({
        "bootstrap.servers": settings.kafka_bootstrap,
        "group.id": group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
    })
    c.subscribe(topics)
    return c

class EventPublisher:
    """Publishes committed events; failures are logged, never raised"""

    def __init__(self, topic: str, producer: Optional[Producer] = None, enabled: bool = True):
        self.topic = topic
        self.enabled = enabled
        self._producer = producer

    @property
    def producer(self) -> Producer:
        if self._producer is None:
            self._producer = get_producer()
        return self._producer

    def publish(self, event: BaseModel, key: Optional[str] = None) -> bool:
        if not self.enabled:
            return False
        try:
            self.producer.produce(
                self.topic,
                key=key.encode("utf-8") if key else None,
                value=event.model_dump_json().encode("utf-8"),
                headers=list(get_trace_headers().items()),
            )
            remaining = self.producer.flush(FLUSH_TIMEOUT_SECONDS)
            if remaining:
                logger.error(f"{remaining} event(s) still queued for {self.topic} after flush")
                return False
        except (KafkaException, BufferError) as e:
            logger.error(f"Failed to publish event to {self.topic}: {e}")
            return False
        return True

wallet_event_publisher = EventPublisher(TOPIC_WALLET_EVENTS, enabled=settings.events_enabled)
