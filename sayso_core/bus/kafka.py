"""
Kafka/Redpanda event bus.

Invariants:
    - Producer uses acks=all for strongest durability
    - Idempotent producer prevents duplicate writes on retry
    - Consumer uses manual commit; a record is redelivered until the
      reactor has handled and committed it

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Reactions must stay idempotent; redelivery after a crash is normal
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from ..config import KafkaConfig
from ..store.database import now_ms
from .base import BusConnectionError, BusError, BusPosition, BusRecord, BusTimeoutError

logger = logging.getLogger(__name__)


class KafkaEventBus:
    """Kafka implementation of EventBus.

    Durability configuration:
        - acks='all': Wait for all in-sync replicas
        - enable_idempotence=True: Prevent duplicates on retry

    Example:
        >>> bus = KafkaEventBus(KafkaConfig(brokers="localhost:9092"))
        >>> await bus.connect()
        >>> await bus.publish("sayso-domain-events", "biz-1", event.to_bytes())
    """

    def __init__(self, config: KafkaConfig) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    def _security_options(self) -> dict:
        options: dict = {}
        if self.config.security_protocol != "PLAINTEXT":
            options["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            options["sasl_mechanism"] = self.config.sasl_mechanism
            options["sasl_plain_username"] = self.config.sasl_username
            options["sasl_plain_password"] = self.config.sasl_password
        if self.config.ssl_cafile:
            options["ssl_cafile"] = self.config.ssl_cafile
        return options

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            BusConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                linger_ms=5,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **self._security_options(),
            )
            await self._producer.start()
            self._connected = True

            logger.info(
                "Connected to Kafka",
                extra={
                    "brokers": self.config.brokers,
                    "acks": self.config.acks,
                    "idempotent": self.config.enable_idempotence,
                },
            )
        except KafkaError as e:
            self._connected = False
            raise BusConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Stop consumer and producer, flushing pending writes."""
        if self._consumer:
            try:
                await self._consumer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing consumer: {e}")
            self._consumer = None

        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def publish(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> BusPosition:
        """Publish and wait for the broker acknowledgment.

        Raises:
            BusConnectionError: If not connected or the connection dropped
            BusTimeoutError: If send times out
            BusError: For other Kafka errors
        """
        if not self._producer:
            raise BusConnectionError("Not connected to Kafka")

        try:
            metadata = await self._producer.send_and_wait(
                topic,
                value=value,
                key=key.encode("utf-8"),
                headers=list(headers.items()) if headers else None,
            )
        except KafkaTimeoutError as e:
            raise BusTimeoutError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise BusConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise BusError(f"Kafka send failed: {e}") from e

        pos = BusPosition(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            timestamp_ms=metadata.timestamp or now_ms(),
        )
        logger.debug(
            "Event published to Kafka",
            extra={"topic": topic, "key": key, "partition": pos.partition, "offset": pos.offset},
        )
        return pos

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[BusRecord]:
        """Consume the topic as part of group_id.

        Raises:
            BusConnectionError: If subscription fails
            BusError: For other consumer errors
        """
        try:
            if self._consumer:
                await self._consumer.stop()

            self._consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=self.config.brokers,
                group_id=group_id,
                auto_offset_reset=self.config.auto_offset_reset,
                enable_auto_commit=False,
                max_poll_records=100,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000,
                **self._security_options(),
            )
            await self._consumer.start()
            logger.info("Subscribed to Kafka topic", extra={"topic": topic, "group_id": group_id})

            async for msg in self._consumer:
                yield BusRecord(
                    key=msg.key.decode("utf-8") if msg.key else "",
                    value=msg.value,
                    position=BusPosition(
                        topic=msg.topic,
                        partition=msg.partition,
                        offset=msg.offset,
                        timestamp_ms=msg.timestamp or now_ms(),
                    ),
                    headers=dict(msg.headers) if msg.headers else {},
                )

        except KafkaConnectionError as e:
            raise BusConnectionError(f"Failed to subscribe: {e}") from e
        except KafkaError as e:
            raise BusError(f"Consumer error: {e}") from e

    async def commit(self, record: BusRecord) -> None:
        """Commit the offset after record.

        Raises:
            BusError: If there is no consumer or the commit fails
        """
        if not self._consumer:
            raise BusError("No active consumer to commit")

        try:
            await self._consumer.commit(
                {
                    TopicPartition(record.position.topic, record.position.partition):
                        OffsetAndMetadata(record.position.offset + 1, "")
                }
            )
        except KafkaError as e:
            raise BusError(f"Failed to commit: {e}") from e

        logger.debug(
            "Committed offset",
            extra={
                "topic": record.position.topic,
                "partition": record.position.partition,
                "offset": record.position.offset,
            },
        )
