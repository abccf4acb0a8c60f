"""
Unit tests for the notification fan-out.

Tests cover:
- Reply recipients (review author, business owner)
- Never notifying the actor
- Duplicate suppression on replay
- Highly-rated, badge and helpful-vote notifications
- Actor display names
"""

import pytest

from sayso_core.events import DomainEvent, EventKind
from sayso_core.reactions.fanout import FALLBACK_ACTOR_NAME


class TestReplyFanout:
    """Tests for reply notifications."""

    @pytest.fixture
    async def review(self, store, alice, business):
        return await store.create_review("business", business.id, alice.id, 4, "Nice place")

    @pytest.mark.asyncio
    async def test_reply_by_stranger_notifies_author_and_owner(
        self, store, fanout, review, bob, owner, alice
    ):
        reply = await store.create_reply(review.id, bob.id, "Agreed!")

        result = await fanout.on_reply_created(review.id, reply.id, bob.id)

        kinds = {(n.recipient_id, n.kind) for n in result.created}
        assert kinds == {(alice.id, "comment_reply"), (owner.id, "review")}

    @pytest.mark.asyncio
    async def test_owner_reply_notifies_author_only(self, store, fanout, review, owner, alice):
        """The owner never hears about their own reply."""
        reply = await store.create_reply(review.id, owner.id, "Thanks for visiting")

        result = await fanout.on_reply_created(review.id, reply.id, owner.id)

        assert result.recipients == {alice.id}
        assert result.suppressed == 1
        assert "Corner Cafe" in result.created[0].message

    @pytest.mark.asyncio
    async def test_author_reply_notifies_owner_only(self, store, fanout, review, owner, alice):
        reply = await store.create_reply(review.id, alice.id, "Edit: the coffee was great")

        result = await fanout.on_reply_created(review.id, reply.id, alice.id)

        assert result.recipients == {owner.id}

    @pytest.mark.asyncio
    async def test_owner_reviewing_own_business_gets_one_notification(
        self, store, fanout, owner, business, bob
    ):
        """When the owner wrote the review, the author notification covers them."""
        review = await store.create_review("business", business.id, owner.id, 5, "Biased")
        reply = await store.create_reply(review.id, bob.id, "Hmm")

        result = await fanout.on_reply_created(review.id, reply.id, bob.id)

        assert [(n.recipient_id, n.kind) for n in result.created] == [
            (owner.id, "comment_reply")
        ]

    @pytest.mark.asyncio
    async def test_replay_adds_nothing(self, store, fanout, notifications, review, bob, alice):
        reply = await store.create_reply(review.id, bob.id, "Agreed!")

        await fanout.on_reply_created(review.id, reply.id, bob.id)
        again = await fanout.on_reply_created(review.id, reply.id, bob.id)

        assert again.created == []
        assert again.duplicates == 2
        assert len(await notifications.list_for(alice.id)) == 1

    @pytest.mark.asyncio
    async def test_reply_to_missing_review(self, fanout, bob):
        result = await fanout.on_reply_created("no-such-review", "reply-1", bob.id)

        assert result.created == []


class TestReviewFanout:
    """Tests for review, highly-rated, badge and vote notifications."""

    @pytest.mark.asyncio
    async def test_new_review_notifies_owner(self, store, fanout, business, owner, alice):
        review = await store.create_review("business", business.id, alice.id, 5, "Great")

        result = await fanout.on_review_created(review.id, alice.id)

        assert result.recipients == {owner.id}
        assert result.created[0].kind == "review"
        assert result.created[0].message.startswith("Alice left a 5-star review")
        assert result.created[0].link == f"/my-businesses/businesses/{business.id}/reviews"

    @pytest.mark.asyncio
    async def test_owner_review_not_notified(self, store, fanout, business, owner):
        review = await store.create_review("business", business.id, owner.id, 5, "Self")

        result = await fanout.on_review_created(review.id, owner.id)

        assert result.created == []
        assert result.suppressed == 1

    @pytest.mark.asyncio
    async def test_highly_rated_fires_once(self, store, engine, fanout, notifications, business, owner, alice, bob):
        """Crossing the threshold notifies the owner exactly once."""
        await store.create_review("business", business.id, alice.id, 5, "Great")
        await engine.recompute_review_stats("business", business.id)
        assert (await fanout.check_highly_rated(business.id, alice.id)).created == []

        await store.create_review("business", business.id, bob.id, 4, "Good")
        await engine.recompute_review_stats("business", business.id)
        first = await fanout.check_highly_rated(business.id, bob.id)
        second = await fanout.check_highly_rated(business.id, bob.id)

        assert [n.kind for n in first.created] == ["highlyRated"]
        assert second.created == []
        assert len(await notifications.list_by_entity(f"highly_rated:{business.id}")) == 1

    @pytest.mark.asyncio
    async def test_below_threshold_not_highly_rated(self, store, engine, fanout, business, alice, bob):
        await store.create_review("business", business.id, alice.id, 5, "Great")
        await store.create_review("business", business.id, bob.id, 3, "Meh")
        await engine.recompute_review_stats("business", business.id)

        assert (await fanout.check_highly_rated(business.id, bob.id)).created == []

    @pytest.mark.asyncio
    async def test_badge_notification(self, fanout, alice, admin):
        result = await fanout.on_badge_awarded(alice.id, "first-review", "First Review", admin.id)

        assert result.recipients == {alice.id}
        assert result.created[0].kind == "badge"
        assert result.created[0].link == "/achievements"

    @pytest.mark.asyncio
    async def test_helpful_vote_notifies_author(self, store, fanout, business, alice, bob):
        review = await store.create_review("business", business.id, alice.id, 5, "Great")

        result = await fanout.on_vote_created(review.id, bob.id)

        assert result.recipients == {alice.id}
        assert "bobby found your review helpful" == result.created[0].message

    @pytest.mark.asyncio
    async def test_self_vote_not_notified(self, store, fanout, business, alice):
        review = await store.create_review("business", business.id, alice.id, 5, "Great")

        result = await fanout.on_vote_created(review.id, alice.id)

        assert result.created == []

    @pytest.mark.asyncio
    async def test_handle_dispatches_by_kind(self, store, fanout, business, owner, alice):
        review = await store.create_review("business", business.id, alice.id, 4, "Good")
        event = DomainEvent(
            kind=EventKind.REVIEW_CREATED,
            resource_type="review",
            resource_id=review.id,
            actor_id=alice.id,
            payload={"target_type": "business", "target_id": business.id},
        )

        result = await fanout.handle(event)

        assert owner.id in result.recipients

    @pytest.mark.asyncio
    async def test_events_without_notifications(self, fanout, business):
        event = DomainEvent(
            kind=EventKind.BUSINESS_UPDATED, resource_type="business", resource_id=business.id
        )

        result = await fanout.handle(event)

        assert result.created == []


class TestActorDisplayName:
    """Tests for actor_display_name."""

    @pytest.mark.asyncio
    async def test_display_name_preferred(self, fanout, alice):
        assert await fanout.actor_display_name(alice.id) == "Alice"

    @pytest.mark.asyncio
    async def test_username_fallback(self, fanout, bob):
        assert await fanout.actor_display_name(bob.id) == "bobby"

    @pytest.mark.asyncio
    async def test_business_name_for_owner(self, fanout, owner, business):
        assert await fanout.actor_display_name(owner.id, business) == "Corner Cafe"

    @pytest.mark.asyncio
    async def test_unknown_actor(self, fanout, admin):
        """No profile and no guest name fall back to a neutral name."""
        assert await fanout.actor_display_name(admin.id) == FALLBACK_ACTOR_NAME
        assert await fanout.actor_display_name(None) == FALLBACK_ACTOR_NAME
