"""
In-memory event bus for tests and single-process deployments.

Invariants:
    - All data is lost on process exit
    - Same per-key ordering guarantee as the Kafka backend
    - A consumer group resumes from its last committed offset

How to change safely:
    - Keep interface compatible with the EventBus protocol
    - Never yield to a consumer while holding the lock; consumers publish
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from ..store.database import now_ms
from .base import BusConnectionError, BusPosition, BusRecord

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""

    records: list[BusRecord] = field(default_factory=list)


class InMemoryEventBus:
    """In-memory implementation of EventBus.

    Attributes:
        num_partitions: Number of partitions per topic

    Thread safety:
        Uses an asyncio lock. Safe to use from multiple coroutines on one
        event loop.

    Example:
        >>> bus = InMemoryEventBus()
        >>> await bus.connect()
        >>> await bus.publish("events", "biz-1", b"{}")
        >>> async for record in bus.subscribe("events", "reactor"):
        ...     await bus.commit(record)
    """

    def __init__(self, num_partitions: int = 4) -> None:
        self.num_partitions = num_partitions
        self._topics: dict[str, dict[int, InMemoryPartition]] = defaultdict(
            lambda: {i: InMemoryPartition() for i in range(self.num_partitions)}
        )
        self._committed: dict[str, dict[int, int]] = defaultdict(lambda: defaultdict(int))
        self._topic_groups: dict[str, str] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self._new_record_events: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._subscribers: set[str] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryEventBus connected")

    async def close(self) -> None:
        """Close, stop subscribers and clear all data."""
        self._connected = False
        self._subscribers.clear()
        for event in self._new_record_events.values():
            event.set()
        self._topics.clear()
        self._committed.clear()
        logger.debug("InMemoryEventBus closed")

    async def publish(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> BusPosition:
        """Append a record to the topic partition chosen by key.

        Raises:
            BusConnectionError: If not connected
        """
        if not self._connected:
            raise BusConnectionError("Not connected")

        partition = self._partition_for_key(key)

        async with self._lock:
            part = self._topics[topic][partition]
            pos = BusPosition(
                topic=topic,
                partition=partition,
                offset=len(part.records),
                timestamp_ms=now_ms(),
            )
            part.records.append(BusRecord(key=key, value=value, position=pos,
                                          headers=headers or {}))
            self._new_record_events[topic].set()

        logger.debug(
            "Event published to in-memory bus",
            extra={"topic": topic, "key": key, "partition": partition, "offset": pos.offset},
        )
        return pos

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[BusRecord]:
        """Yield records from the group's committed offsets onward.

        Raises:
            BusConnectionError: If not connected
        """
        if not self._connected:
            raise BusConnectionError("Not connected")

        consumer_key = f"{topic}:{group_id}"
        self._subscribers.add(consumer_key)
        self._topic_groups[topic] = group_id
        positions = {
            partition: self._committed[group_id][partition]
            for partition in range(self.num_partitions)
        }

        try:
            while consumer_key in self._subscribers:
                async with self._lock:
                    batch: list[BusRecord] = []
                    for partition, part in self._topics[topic].items():
                        batch.extend(part.records[positions[partition]:])
                        positions[partition] = len(part.records)
                    if not batch:
                        self._new_record_events[topic].clear()

                for record in batch:
                    yield record

                if not batch:
                    try:
                        await asyncio.wait_for(self._new_record_events[topic].wait(), timeout=1.0)
                    except asyncio.TimeoutError:
                        pass
        finally:
            self._subscribers.discard(consumer_key)

    async def commit(self, record: BusRecord) -> None:
        """Commit a consumed record for the topic's active consumer group."""
        group_id = self._topic_groups.get(record.position.topic, "default")
        committed = self._committed[group_id]
        committed[record.position.partition] = max(
            committed[record.position.partition], record.position.offset + 1
        )

    def _partition_for_key(self, key: str) -> int:
        """Get partition number for a key using consistent hashing."""
        hash_bytes = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(hash_bytes[:4], "big") % self.num_partitions

    # Testing helpers

    def get_all_records(self, topic: str) -> list[BusRecord]:
        """All records for a topic across partitions (testing helper)."""
        records: list[BusRecord] = []
        if topic in self._topics:
            for partition in sorted(self._topics[topic]):
                records.extend(self._topics[topic][partition].records)
        return records

    def get_committed(self, group_id: str) -> dict[int, int]:
        """Committed next-offsets per partition for a group (testing helper)."""
        return dict(self._committed.get(group_id, {}))
