"""
Unit tests for the in-memory event bus.

Tests cover:
- Connection lifecycle
- Publish positions and key partitioning
- Subscribe from committed offsets
- Testing helpers
"""

import asyncio

import pytest

from sayso_core.bus import BusConnectionError, InMemoryEventBus


class TestInMemoryEventBus:
    """Tests for InMemoryEventBus."""

    @pytest.fixture
    def bus(self):
        """Create a fresh bus."""
        return InMemoryEventBus(num_partitions=4)

    async def _collect(self, bus, topic, group_id, count, commit=True):
        records = []

        async def consume():
            async for record in bus.subscribe(topic, group_id):
                records.append(record)
                if commit:
                    await bus.commit(record)
                if len(records) == count:
                    break

        await asyncio.wait_for(consume(), timeout=5.0)
        return records

    @pytest.mark.asyncio
    async def test_connect_disconnect(self, bus):
        assert not bus.is_connected

        await bus.connect()
        assert bus.is_connected

        await bus.close()
        assert not bus.is_connected

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self, bus):
        with pytest.raises(BusConnectionError):
            await bus.publish("events", "biz-1", b"{}")

    @pytest.mark.asyncio
    async def test_same_key_same_partition(self, bus):
        """Records with one key stay ordered in one partition."""
        await bus.connect()

        first = await bus.publish("events", "biz-1", b"1")
        second = await bus.publish("events", "biz-1", b"2")

        assert first.partition == second.partition
        assert second.offset == first.offset + 1
        assert 0 <= first.partition < 4

    @pytest.mark.asyncio
    async def test_subscribe_yields_published(self, bus):
        await bus.connect()
        await bus.publish("events", "biz-1", b'{"n": 1}')
        await bus.publish("events", "biz-1", b'{"n": 2}')

        records = await self._collect(bus, "events", "reactor", 2)

        assert [record.value_json()["n"] for record in records] == [1, 2]

    @pytest.mark.asyncio
    async def test_resubscribe_starts_after_commit(self, bus):
        """A group resumes after its last committed record."""
        await bus.connect()
        await bus.publish("events", "biz-1", b'{"n": 1}')
        await bus.publish("events", "biz-1", b'{"n": 2}')
        await self._collect(bus, "events", "reactor", 2)

        await bus.publish("events", "biz-1", b'{"n": 3}')
        records = await self._collect(bus, "events", "reactor", 1)

        assert records[0].value_json() == {"n": 3}

    @pytest.mark.asyncio
    async def test_uncommitted_records_redelivered(self, bus):
        await bus.connect()
        await bus.publish("events", "biz-1", b'{"n": 1}')
        await self._collect(bus, "events", "reactor", 1, commit=False)

        records = await self._collect(bus, "events", "reactor", 1)

        assert records[0].value_json() == {"n": 1}

    @pytest.mark.asyncio
    async def test_subscriber_wakes_on_publish(self, bus):
        await bus.connect()
        task = asyncio.create_task(self._collect(bus, "events", "reactor", 1))
        await asyncio.sleep(0.05)

        await bus.publish("events", "biz-1", b'{"n": 1}')
        records = await task

        assert len(records) == 1

    @pytest.mark.asyncio
    async def test_helpers(self, bus):
        await bus.connect()
        await bus.publish("events", "a", b"1")
        await bus.publish("events", "b", b"2")
        await self._collect(bus, "events", "reactor", 2)

        assert len(bus.get_all_records("events")) == 2
        assert sum(bus.get_committed("reactor").values()) == 2
