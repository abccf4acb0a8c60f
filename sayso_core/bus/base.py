"""
Base protocol and types for the domain event bus.

This module defines the EventBus protocol that all backends implement,
along with the position and record types and the bus error family.

Invariants:
    - BusPosition uniquely identifies a record within a topic
    - Records with the same key are delivered in publish order
    - A record is redelivered until it is committed

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import CoreConfig

logger = logging.getLogger(__name__)


class BusError(Exception):
    """Base exception for event bus operations."""

    pass


class BusConnectionError(BusError):
    """Connection to the bus backend failed."""

    pass


class BusTimeoutError(BusError):
    """Bus operation timed out."""

    pass


class BusSerializationError(BusError):
    """Failed to decode a bus record."""

    pass


@dataclass(frozen=True)
class BusPosition:
    """Position of a record in the bus.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within the partition
        timestamp_ms: When the record was written (Unix ms)
    """

    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class BusRecord:
    """A record read from the bus.

    Attributes:
        key: Partition key
        value: Encoded DomainEvent
        position: Where the record sits in the bus
        headers: Optional headers
    """

    key: str
    value: bytes
    position: BusPosition
    headers: dict[str, bytes] = field(default_factory=dict)

    def value_json(self) -> Any:
        """Parse value as JSON.

        Raises:
            BusSerializationError: If value is not valid JSON
        """
        try:
            return json.loads(self.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise BusSerializationError(f"Failed to parse record value as JSON: {e}") from e

    def __str__(self) -> str:
        return f"BusRecord(key={self.key}, pos={self.position})"


@runtime_checkable
class EventBus(Protocol):
    """Protocol for event bus backends.

    Durability contract:
        - publish() returns only after the backend acknowledged the record

    Ordering contract:
        - Records with the same key are delivered in order

    Example:
        >>> bus = InMemoryEventBus()
        >>> await bus.connect()
        >>> pos = await bus.publish("sayso-domain-events", "biz-1", event.to_bytes())
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            BusConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending writes and release resources."""
        ...

    @abstractmethod
    async def publish(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> BusPosition:
        """Publish a record.

        Raises:
            BusConnectionError: If not connected
            BusTimeoutError: If the write times out
            BusError: For other write failures
        """
        ...

    @abstractmethod
    def subscribe(self, topic: str, group_id: str) -> AsyncIterator[BusRecord]:
        """Yield records for a consumer group, in order within partitions.

        The caller must commit() each processed record.
        """
        ...

    @abstractmethod
    async def commit(self, record: BusRecord) -> None:
        """Acknowledge a processed record.

        Raises:
            BusError: If commit fails
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_event_bus(config: CoreConfig) -> EventBus:
    """Create an event bus from configuration.

    Raises:
        ValueError: If the backend is not supported
    """
    from ..config import BusBackend
    from .kafka import KafkaEventBus
    from .memory import InMemoryEventBus

    if config.bus.backend == BusBackend.KAFKA:
        return KafkaEventBus(config.kafka)
    elif config.bus.backend == BusBackend.MEMORY:
        return InMemoryEventBus()
    else:
        raise ValueError(f"Unsupported event bus backend: {config.bus.backend}")
