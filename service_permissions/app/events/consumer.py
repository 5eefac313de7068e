"""
Kafka consumer for role-change events.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional
import kafka
from kafka.errors import KafkaError

from shared.logging import get_logger
from shared.errors import ExternalServiceError
from .handlers import PermissionEventHandler, PERMISSION_TOPICS, TOPIC_ALIASES


DEFAULT_TOPICS = list(PERMISSION_TOPICS) + list(TOPIC_ALIASES)


class EventConsumer:
    """Polls role-change topics and feeds each message to the event handler."""

    def __init__(
        self,
        bootstrap_servers: str,
        group_id: str,
        handler: PermissionEventHandler,
        topics: Optional[Iterable[str]] = None,
    ):
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.handler = handler
        self.topics: List[str] = list(topics or DEFAULT_TOPICS)
        self.logger = get_logger("permissions.events.consumer")
        self.consumer: Optional[kafka.KafkaConsumer] = None
        self.running = False
        self._consumer_task: Optional[asyncio.Task] = None

    async def start(self, start_loop: bool = True):
        """Start the Kafka consumer and subscribe to the event topics."""
        try:
            self.consumer = kafka.KafkaConsumer(
                bootstrap_servers=self.bootstrap_servers,
                group_id=self.group_id,
                value_deserializer=lambda x: x,  # decoded by the handler
                key_deserializer=lambda x: x,
                auto_offset_reset='latest',
                enable_auto_commit=True,
                max_poll_records=100,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000
            )
            self.consumer.subscribe(self.topics)

        except Exception as e:
            self.logger.error("Failed to start Kafka consumer", error=str(e))
            raise ExternalServiceError("kafka", str(e))

        self.running = True
        if start_loop:
            self._consumer_task = asyncio.create_task(self._consume_loop())
        self.logger.info("Kafka consumer started", group_id=self.group_id, topics=self.topics)

    async def stop(self):
        """Stop the Kafka consumer."""
        self.running = False
        if self._consumer_task:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None

        if self.consumer:
            self.consumer.close()
            self.consumer = None
            self.logger.info("Kafka consumer stopped")

    async def process_batch(self, message_batch: Dict[Any, List[Any]]) -> int:
        """Dispatch a polled batch in order. Returns the number of applied events."""
        applied = 0
        for topic_partition, messages in message_batch.items():
            for message in messages:
                if await self.handler.handle_payload(topic_partition.topic, message.value):
                    applied += 1
                else:
                    self.logger.warning(
                        "Skipped role change event",
                        topic=topic_partition.topic,
                        offset=message.offset,
                    )
        return applied

    async def _consume_loop(self):
        """Main consumption loop."""
        loop = asyncio.get_running_loop()
        while self.running:
            try:
                # poll() blocks, keep it off the event loop
                message_batch = await loop.run_in_executor(
                    None, lambda: self.consumer.poll(timeout_ms=1000)
                )
                if message_batch:
                    await self.process_batch(message_batch)

            except KafkaError as e:
                self.logger.error("Kafka error in consume loop", error=str(e))
                await asyncio.sleep(5)  # Back off on errors

            except asyncio.CancelledError:
                break

            except Exception as e:
                self.logger.error("Unexpected error in consume loop", error=str(e))
                await asyncio.sleep(1)

    def is_running(self) -> bool:
        """Check if consumer is running."""
        return self.running
