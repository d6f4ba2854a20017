import json
import logging
from aiokafka import AIOKafkaProducer

from app.application.interfaces import EventPublisher

logger = logging.getLogger(__name__)


class KafkaProducerClient(EventPublisher):
    def __init__(self, bootstrap_servers: str, topic: str = "order.events"):
        self._bootstrap_servers = bootstrap_servers
        self._producer: AIOKafkaProducer | None = None
        self._topic = topic

    async def start(self):
        if not self._producer:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self._bootstrap_servers
            )
            await self._producer.start()
            logger.info("Kafka producer started")

    async def stop(self):
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Kafka producer stopped")

    async def publish_order_event(self, event_type: str, order_id: int, payload: dict) -> bool:
        if not self._producer:
            logger.error("Kafka producer not started")
            return False

        try:
            event = {"event_type": event_type, **payload, "order_id": order_id}

            await self._producer.send_and_wait(
                topic=self._topic,
                key=str(order_id).encode(),
                value=json.dumps(event).encode()
            )
            logger.info(f"Published {event_type} for order {order_id}")
            return True

        except Exception as e:
            logger.error(f"Failed to publish {event_type}: {e}")
            return False
