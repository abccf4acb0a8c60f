"""
Unit tests for the uniqueness guard.

Tests cover:
- At most one primary image per business, including under concurrency
- Promotion of a successor when the primary is deleted
- One helpful vote per user per review
- The store-level constraint and CRITICAL logging of violations
"""

import asyncio
import logging
import sqlite3
import threading

import pytest

from sayso_core.errors import ConflictError, InvariantViolationError, NotFoundError
from sayso_core.guard import UniquenessGuard, _raise_invariant


class TestPrimaryImage:
    """Tests for the primary-image singleton."""

    @pytest.fixture
    def guard(self, db):
        return UniquenessGuard(db)

    async def _primaries(self, store, business_id):
        return [image for image in await store.list_images(business_id) if image.is_primary]

    @pytest.mark.asyncio
    async def test_new_primary_replaces_old(self, guard, store, business):
        first = await guard.add_image(business.id, "https://img/1.jpg", is_primary=True)
        second = await guard.add_image(business.id, "https://img/2.jpg", is_primary=True)

        primaries = await self._primaries(store, business.id)

        assert [image.id for image in primaries] == [second.id]
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_set_primary(self, guard, store, business):
        first = await guard.add_image(business.id, "https://img/1.jpg", is_primary=True)
        second = await guard.add_image(business.id, "https://img/2.jpg")

        promoted = await guard.set_primary_image(business.id, second.id)

        assert promoted.is_primary
        assert (await guard.get_primary_image(business.id)).id == second.id
        assert not (await store.get_image(first.id)).is_primary

    @pytest.mark.asyncio
    async def test_set_primary_is_idempotent(self, guard, business):
        image = await guard.add_image(business.id, "https://img/1.jpg")

        await guard.set_primary_image(business.id, image.id)
        await guard.set_primary_image(business.id, image.id)

        assert (await guard.get_primary_image(business.id)).id == image.id

    @pytest.mark.asyncio
    async def test_set_primary_rejects_foreign_image(self, guard, store, owner, business):
        other = await store.create_business(owner.id, "Second Shop")
        image = await guard.add_image(other.id, "https://img/x.jpg")

        with pytest.raises(NotFoundError):
            await guard.set_primary_image(business.id, image.id)

    @pytest.mark.asyncio
    async def test_add_image_to_missing_business(self, guard):
        with pytest.raises(NotFoundError):
            await guard.add_image("no-such-business", "https://img/1.jpg")

    @pytest.mark.asyncio
    async def test_unknown_image_type_rejected(self, guard, business):
        with pytest.raises(ValueError):
            await guard.add_image(business.id, "https://img/1.jpg", image_type="hologram")

    @pytest.mark.asyncio
    async def test_deleting_primary_promotes_successor(self, guard, business):
        """The next image by sort order becomes primary."""
        primary = await guard.add_image(business.id, "https://img/p.jpg", is_primary=True)
        later = await guard.add_image(business.id, "https://img/l.jpg", sort_order=5)
        earlier = await guard.add_image(business.id, "https://img/e.jpg", sort_order=1)

        deleted, promoted = await guard.delete_image(primary.id)

        assert deleted.id == primary.id
        assert promoted.id == earlier.id
        assert (await guard.get_primary_image(business.id)).id == earlier.id
        assert later.id != promoted.id

    @pytest.mark.asyncio
    async def test_deleting_last_image_leaves_no_primary(self, guard, business):
        primary = await guard.add_image(business.id, "https://img/p.jpg", is_primary=True)

        deleted, promoted = await guard.delete_image(primary.id)

        assert promoted is None
        assert await guard.get_primary_image(business.id) is None

    @pytest.mark.asyncio
    async def test_deleting_missing_image(self, guard):
        assert await guard.delete_image("no-such-image") is None

    @pytest.mark.asyncio
    async def test_concurrent_set_primary_leaves_one(self, guard, store, business):
        """Concurrent writers in separate threads never leave two primaries."""
        images = [
            await guard.add_image(business.id, f"https://img/{i}.jpg") for i in range(6)
        ]
        errors = []

        def promote(image_id):
            try:
                asyncio.run(guard.set_primary_image(business.id, image_id))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=promote, args=(image.id,)) for image in images]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        primaries = await self._primaries(store, business.id)
        assert len(primaries) == 1
        assert primaries[0].id in {image.id for image in images}

    @pytest.mark.asyncio
    async def test_unknown_uploader(self, guard, business):
        with pytest.raises(NotFoundError):
            await guard.add_image(business.id, "https://img/1.jpg", uploaded_by="ghost")

    @pytest.mark.asyncio
    async def test_store_rejects_second_primary_written_directly(self, db, guard, business):
        """The partial unique index holds even for writes that skip the guard."""
        await guard.add_image(business.id, "https://img/1.jpg", is_primary=True)

        with pytest.raises(sqlite3.IntegrityError):
            with db.transaction() as conn:
                conn.execute(
                    "INSERT INTO business_images (id, business_id, url, type, sort_order, "
                    "is_primary, created_at) VALUES ('rogue', ?, 'https://img/x.jpg', "
                    "'gallery', 0, 1, 1)",
                    (business.id,),
                )

    def test_invariant_violation_logged_critical(self, caplog):
        error = sqlite3.IntegrityError("UNIQUE constraint failed: business_images.business_id")

        with caplog.at_level(logging.CRITICAL, logger="sayso_core.guard"):
            with pytest.raises(InvariantViolationError) as exc_info:
                _raise_invariant("one_primary_image_per_business", error, business_id="b1")

        assert exc_info.value.details["business_id"] == "b1"
        assert any(record.levelno == logging.CRITICAL for record in caplog.records)


class TestHelpfulVotes:
    """Tests for one vote per user per review."""

    @pytest.fixture
    def guard(self, db):
        return UniquenessGuard(db)

    @pytest.fixture
    async def review(self, store, alice, business):
        return await store.create_review("business", business.id, alice.id, 5, "Lovely")

    @pytest.mark.asyncio
    async def test_vote_recorded(self, guard, store, bob, review):
        await guard.cast_vote(review.id, bob.id)

        assert await store.has_vote(review.id, bob.id)

    @pytest.mark.asyncio
    async def test_second_vote_conflicts(self, guard, bob, review):
        await guard.cast_vote(review.id, bob.id)

        with pytest.raises(ConflictError) as exc_info:
            await guard.cast_vote(review.id, bob.id)

        assert exc_info.value.constraint == "one_vote_per_user_per_review"

    @pytest.mark.asyncio
    async def test_vote_on_missing_review(self, guard, bob):
        with pytest.raises(NotFoundError) as exc_info:
            await guard.cast_vote("no-such-review", bob.id)

        assert exc_info.value.resource_type == "review"

    @pytest.mark.asyncio
    async def test_vote_by_unknown_identity(self, guard, store, review):
        with pytest.raises(NotFoundError) as exc_info:
            await guard.cast_vote(review.id, "ghost")

        assert exc_info.value.resource_type == "identity"
        assert exc_info.value.resource_id == "ghost"
        assert not await store.has_vote(review.id, "ghost")

    @pytest.mark.asyncio
    async def test_remove_vote(self, guard, store, bob, review):
        await guard.cast_vote(review.id, bob.id)

        assert await guard.remove_vote(review.id, bob.id) is True
        assert await guard.remove_vote(review.id, bob.id) is False
        assert not await store.has_vote(review.id, bob.id)

    @pytest.mark.asyncio
    async def test_vote_again_after_removal(self, guard, store, bob, review):
        await guard.cast_vote(review.id, bob.id)
        await guard.remove_vote(review.id, bob.id)

        await guard.cast_vote(review.id, bob.id)

        assert await store.has_vote(review.id, bob.id)
