"""
Unit tests for the derived-state engine.

Tests cover:
- Review counters and average after create/delete
- Freshness bumps on meaningful business changes only
- Helpful vote counters
- Recompute after an identity and its reviews and votes are removed
- Recompute idempotence
"""

import pytest

from sayso_core.events import DomainEvent, EventKind
from sayso_core.guard import UniquenessGuard
from sayso_core.reactions import changed_meaningful_fields


class TestDerivedStateEngine:
    """Tests for DerivedStateEngine."""

    async def _review(self, store, engine, business_id, user_id, rating, at_ms=None):
        review = await store.create_review(
            "business", business_id, user_id, rating, "text", created_at=at_ms
        )
        await engine.handle(
            DomainEvent(
                kind=EventKind.REVIEW_CREATED,
                resource_type="review",
                resource_id=review.id,
                actor_id=user_id,
                payload={"target_type": "business", "target_id": business_id},
                ts_ms=review.created_at,
            )
        )
        return review

    @pytest.mark.asyncio
    async def test_business_created_initializes_state(self, engine, business):
        await engine.handle(
            DomainEvent(
                kind=EventKind.BUSINESS_CREATED,
                resource_type="business",
                resource_id=business.id,
            )
        )

        state = await engine.get_aggregate("business", business.id)

        assert state.review_count == 0
        assert state.average_rating == 0.0
        assert state.rating_distribution == {"1": 0, "2": 0, "3": 0, "4": 0, "5": 0}
        assert state.last_activity_at == business.created_at

    @pytest.mark.asyncio
    async def test_delete_review_recomputes_average(self, store, engine, business, alice, bob, owner):
        """Ratings [5, 3, 4]; deleting the 3 leaves 4.5 over 2 reviews."""
        await self._review(store, engine, business.id, alice.id, 5)
        middle = await self._review(store, engine, business.id, bob.id, 3)
        await self._review(store, engine, business.id, owner.id, 4)

        state = await engine.get_aggregate("business", business.id)
        assert state.review_count == 3
        assert state.average_rating == 4.0

        await store.delete_review(middle.id)
        await engine.handle(
            DomainEvent(
                kind=EventKind.REVIEW_DELETED,
                resource_type="review",
                resource_id=middle.id,
                payload={"target_type": "business", "target_id": business.id},
            )
        )

        state = await engine.get_aggregate("business", business.id)
        assert state.review_count == 2
        assert state.average_rating == 4.5
        assert state.rating_distribution["3"] == 0
        assert state.rating_distribution["5"] == 1

    @pytest.mark.asyncio
    async def test_average_rounded_to_two_decimals(self, store, engine, business, alice, bob, owner):
        for user, rating in ((alice, 5), (bob, 4), (owner, 4)):
            await self._review(store, engine, business.id, user.id, rating)

        state = await engine.get_aggregate("business", business.id)

        assert state.average_rating == 4.33

    @pytest.mark.asyncio
    async def test_review_bumps_freshness(self, store, engine, business, alice):
        later = business.created_at + 60_000

        await self._review(store, engine, business.id, alice.id, 4, at_ms=later)

        state = await engine.get_aggregate("business", business.id)
        assert state.last_activity_at == later

    @pytest.mark.asyncio
    async def test_freshness_never_moves_backwards(self, store, engine, business, alice, bob):
        """A late-delivered older event does not rewind last_activity_at."""
        newer = business.created_at + 120_000
        older = business.created_at + 60_000

        await self._review(store, engine, business.id, alice.id, 4, at_ms=newer)
        await self._review(store, engine, business.id, bob.id, 2, at_ms=older)

        state = await engine.get_aggregate("business", business.id)
        assert state.last_activity_at == newer
        assert state.review_count == 2

    @pytest.mark.asyncio
    async def test_meaningful_update_bumps_freshness(self, store, engine, business):
        """Changing the phone number is activity; the slug is bookkeeping."""
        await engine.initialize_target("business", business.id)
        t1 = business.created_at + 10_000
        t2 = business.created_at + 20_000

        bumped = await engine.apply_business_update(
            business.id, {"phone": None}, {"phone": "555-0100"}, t1
        )
        assert bumped is True
        assert (await engine.get_aggregate("business", business.id)).last_activity_at == t1

        bumped = await engine.apply_business_update(
            business.id, {"slug": "corner-cafe"}, {"slug": "the-corner-cafe"}, t2
        )
        assert bumped is False
        assert (await engine.get_aggregate("business", business.id)).last_activity_at == t1

    @pytest.mark.asyncio
    async def test_unchanged_value_does_not_bump(self, engine, business):
        await engine.initialize_target("business", business.id)

        bumped = await engine.apply_business_update(
            business.id, {"name": "Corner Cafe"}, {"name": "Corner Cafe"}, business.created_at + 5
        )

        assert bumped is False

    @pytest.mark.asyncio
    async def test_recompute_is_idempotent(self, store, engine, business, alice, bob):
        """Applying the same recompute twice gives the same state."""
        await self._review(store, engine, business.id, alice.id, 5)
        await self._review(store, engine, business.id, bob.id, 2)

        first = await engine.recompute_review_stats("business", business.id)
        second = await engine.recompute_review_stats("business", business.id)

        assert first == second

    @pytest.mark.asyncio
    async def test_replayed_event_converges(self, store, engine, business, alice):
        review = await store.create_review("business", business.id, alice.id, 5, "text")
        event = DomainEvent(
            kind=EventKind.REVIEW_CREATED,
            resource_type="review",
            resource_id=review.id,
            payload={"target_type": "business", "target_id": business.id},
            ts_ms=review.created_at,
        )

        first = await engine.handle(event)
        second = await engine.handle(event)

        assert first == second
        assert second.review_count == 1

    @pytest.mark.asyncio
    async def test_helpful_votes_recomputed(self, db, store, engine, business, alice, bob, owner):
        guard = UniquenessGuard(db)
        review = await self._review(store, engine, business.id, alice.id, 5)
        await guard.cast_vote(review.id, bob.id)
        await guard.cast_vote(review.id, owner.id)

        count = await engine.recompute_helpful_votes(review.id)

        assert count == 2
        assert (await store.get_review(review.id)).helpful_count == 2
        assert (await engine.get_aggregate("business", business.id)).helpful_votes == 2

        await guard.remove_vote(review.id, bob.id)
        await engine.handle(
            DomainEvent(
                kind=EventKind.VOTE_DELETED,
                resource_type="vote",
                resource_id=f"{review.id}:{bob.id}",
                payload={"review_id": review.id},
            )
        )
        assert (await store.get_review(review.id)).helpful_count == 1

    @pytest.mark.asyncio
    async def test_identity_deleted_recomputes(self, db, store, engine, business, alice, bob):
        """Reviews and votes removed by the cascade are reflected once reacted to."""
        guard = UniquenessGuard(db)
        kept = await self._review(store, engine, business.id, alice.id, 5)
        await self._review(store, engine, business.id, bob.id, 2)
        await guard.cast_vote(kept.id, bob.id)
        await engine.recompute_helpful_votes(kept.id)

        removal = await store.delete_identity(bob.id)
        event = DomainEvent(
            kind=EventKind.IDENTITY_DELETED,
            resource_type="identity",
            resource_id=bob.id,
            payload={
                "review_targets": [list(target) for target in removal.review_targets],
                "voted_review_ids": removal.voted_review_ids,
            },
        )
        await engine.handle(event)
        first = await engine.get_aggregate("business", business.id)
        await engine.handle(event)

        assert first.review_count == 1
        assert first.average_rating == 5.0
        assert first.helpful_votes == 0
        assert first.last_activity_at == event.ts_ms
        assert (await store.get_review(kept.id)).helpful_count == 0
        assert await engine.get_aggregate("business", business.id) == first

    @pytest.mark.asyncio
    async def test_votes_for_missing_review(self, engine):
        assert await engine.recompute_helpful_votes("no-such-review") is None

    @pytest.mark.asyncio
    async def test_business_deleted_drops_state(self, store, engine, business, alice):
        await self._review(store, engine, business.id, alice.id, 5)
        await store.delete_business(business.id)

        await engine.handle(
            DomainEvent(
                kind=EventKind.BUSINESS_DELETED,
                resource_type="business",
                resource_id=business.id,
            )
        )

        assert await engine.get_aggregate("business", business.id) is None

    @pytest.mark.asyncio
    async def test_event_targets_are_aggregated(self, store, engine, owner, alice):
        event = await store.create_event(owner.id, "Street Fair")
        await store.create_review("event", event.id, None, 4, "Fun", guest_name="Gus")

        state = await engine.recompute_review_stats("event", event.id)

        assert state.review_count == 1
        assert state.average_rating == 4.0


class TestChangedMeaningfulFields:
    """Tests for changed_meaningful_fields."""

    def test_bookkeeping_fields_ignored(self):
        before = {"slug": "a", "internal_notes": "x"}
        after = {"slug": "b", "internal_notes": "y"}

        assert changed_meaningful_fields(before, after) == []

    def test_meaningful_change_listed(self):
        before = {"name": "Cafe", "website": None}
        after = {"name": "Cafe", "website": "https://cafe.example"}

        assert changed_meaningful_fields(before, after) == ["website"]

    def test_verified_flip_counts(self):
        assert changed_meaningful_fields({"verified": False}, {"verified": True}) == ["verified"]
