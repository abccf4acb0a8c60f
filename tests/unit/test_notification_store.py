"""
Unit tests for the notification store.

Tests cover:
- Duplicate suppression by (recipient, kind, entity_id)
- Recipient scoping of reads, updates and deletes
- Unread counts and pagination
"""

import pytest

from sayso_core.errors import NotFoundError


class TestNotificationStore:
    """Tests for NotificationStore."""

    async def _add(self, notifications, recipient_id, entity_id=None, kind="review", created_at=None):
        record, _ = await notifications.add(
            recipient_id=recipient_id,
            kind=kind,
            title="Title",
            message="Message",
            entity_id=entity_id,
            created_at=created_at,
        )
        return record

    @pytest.mark.asyncio
    async def test_add_and_list(self, notifications, alice):
        record, created = await notifications.add(
            recipient_id=alice.id,
            kind="comment_reply",
            title="New reply",
            message="Bob replied",
            link="/business/corner-cafe",
            entity_id="reply:r1:author",
        )

        listed = await notifications.list_for(alice.id)

        assert created is True
        assert listed == [record]
        assert record.read is False

    @pytest.mark.asyncio
    async def test_duplicate_entity_returns_existing(self, notifications, alice):
        first, created_first = await notifications.add(
            recipient_id=alice.id, kind="review", title="a", message="a", entity_id="e1"
        )
        second, created_second = await notifications.add(
            recipient_id=alice.id, kind="review", title="b", message="b", entity_id="e1"
        )

        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert second.title == "a"
        assert len(await notifications.list_for(alice.id)) == 1

    @pytest.mark.asyncio
    async def test_same_entity_different_kind_or_recipient(self, notifications, alice, bob):
        await self._add(notifications, alice.id, "e1", kind="review")
        await self._add(notifications, alice.id, "e1", kind="user")
        await self._add(notifications, bob.id, "e1", kind="review")

        assert len(await notifications.list_by_entity("e1")) == 3

    @pytest.mark.asyncio
    async def test_without_entity_never_deduplicated(self, notifications, alice):
        await self._add(notifications, alice.id)
        await self._add(notifications, alice.id)

        assert len(await notifications.list_for(alice.id)) == 2

    @pytest.mark.asyncio
    async def test_unknown_kind_rejected(self, notifications, alice):
        with pytest.raises(ValueError):
            await self._add(notifications, alice.id, kind="spam")

    @pytest.mark.asyncio
    async def test_unknown_recipient_rejected(self, notifications, alice):
        with pytest.raises(NotFoundError):
            await self._add(notifications, "ghost", "e1")

    @pytest.mark.asyncio
    async def test_mark_read_scoped_to_recipient(self, notifications, alice, bob):
        """Another recipient's ids are ignored."""
        mine = await self._add(notifications, alice.id, "e1")
        theirs = await self._add(notifications, bob.id, "e2")

        updated = await notifications.mark_read(alice.id, [mine.id, theirs.id])

        assert updated == 1
        assert (await notifications.get(alice.id, mine.id)).read is True
        assert (await notifications.get(bob.id, theirs.id)).read is False

    @pytest.mark.asyncio
    async def test_unread_count(self, notifications, alice):
        first = await self._add(notifications, alice.id, "e1")
        await self._add(notifications, alice.id, "e2")
        await self._add(notifications, alice.id, "e3")

        await notifications.mark_read(alice.id, [first.id])
        assert await notifications.get_unread_count(alice.id) == 2

        assert await notifications.mark_all_read(alice.id) == 2
        assert await notifications.get_unread_count(alice.id) == 0

    @pytest.mark.asyncio
    async def test_unread_only_and_pagination(self, notifications, alice):
        records = [
            await self._add(notifications, alice.id, f"e{i}", created_at=1_000 + i)
            for i in range(5)
        ]
        await notifications.mark_read(alice.id, [records[4].id])

        unread = await notifications.list_for(alice.id, unread_only=True)
        page = await notifications.list_for(alice.id, limit=2, offset=1)

        assert [n.id for n in unread] == [r.id for r in reversed(records[:4])]
        assert [n.id for n in page] == [records[3].id, records[2].id]

    @pytest.mark.asyncio
    async def test_delete_scoped_to_recipient(self, notifications, alice, bob):
        record = await self._add(notifications, alice.id, "e1")

        assert await notifications.delete(bob.id, record.id) is False
        assert await notifications.delete(alice.id, record.id) is True
        assert await notifications.get(alice.id, record.id) is None
