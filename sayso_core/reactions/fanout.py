"""
Notification fan-out for Sayso Core.

This module turns committed domain events into notification records:
- Reply to a review: the review author (comment_reply) and the business
  owner (review)
- New review on a business: the business owner (review)
- Business crossing the highly-rated threshold: the owner (highlyRated)
- Badge awarded: the recipient (badge)
- Helpful vote on a review: the review author (user)

Invariants:
    - The actor of an event is never notified about it
    - The business owner is not notified about a reply when they also
      wrote the review; the author notification covers them
    - Each notification has a deterministic entity_id, so a replayed
      event adds nothing (the store suppresses duplicates)
    - This is the only caller of NotificationStore.add

How to change safely:
    - Never change an existing entity_id format; old rows would stop
      deduplicating against new ones
    - New qualifying events need a handler here and a kind in schema.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..config import NotificationConfig
from ..events import DomainEvent, EventKind
from ..store.notification_store import NotificationStore
from ..store.platform_store import PlatformStore
from ..store.records import Business, NotificationRecord, Review
from .derived_state import DerivedStateEngine

logger = logging.getLogger(__name__)

FALLBACK_ACTOR_NAME = "Someone"


@dataclass
class FanoutResult:
    """Notifications produced for one event.

    Attributes:
        created: Newly added notifications
        duplicates: Notifications that already existed and were not re-added
        suppressed: Recipients skipped because they were the actor
    """

    created: list[NotificationRecord] = field(default_factory=list)
    duplicates: int = 0
    suppressed: int = 0

    @property
    def recipients(self) -> set[str]:
        return {record.recipient_id for record in self.created}


def business_link(business: Business) -> str:
    return f"/business/{business.fields.get('slug') or business.id}"


def owner_reviews_link(business: Business) -> str:
    return f"/my-businesses/businesses/{business.id}/reviews"


class NotificationFanout:
    """Computes recipients and enqueues notification records.

    Example:
        >>> fanout = NotificationFanout(store, notifications, engine)
        >>> result = await fanout.on_reply_created("review-1", "reply-7", "owner-1")
        >>> [n.kind for n in result.created]
        ['comment_reply']
    """

    def __init__(
        self,
        store: PlatformStore,
        notifications: NotificationStore,
        engine: DerivedStateEngine,
        config: NotificationConfig | None = None,
    ) -> None:
        self.store = store
        self.notifications = notifications
        self.engine = engine
        self.config = config or NotificationConfig()

    async def actor_display_name(self, actor_id: str | None, business: Business | None = None) -> str:
        """Name shown for the actor of an event.

        The business name if the actor owns the business in context, else
        the profile display name, else the username, else "Someone".
        """
        if actor_id is None:
            return FALLBACK_ACTOR_NAME
        if business is not None and business.owner_id == actor_id:
            return business.name
        profile = await self.store.get_profile(actor_id)
        if profile is not None:
            if profile.display_name:
                return profile.display_name
            if profile.username:
                return profile.username
        return FALLBACK_ACTOR_NAME

    async def _notify(
        self,
        result: FanoutResult,
        actor_id: str | None,
        recipient_id: str | None,
        kind: str,
        title: str,
        message: str,
        link: str | None,
        entity_id: str,
    ) -> None:
        if recipient_id is None:
            return
        if recipient_id == actor_id:
            result.suppressed += 1
            return
        record, created = await self.notifications.add(
            recipient_id=recipient_id,
            kind=kind,
            title=title,
            message=message,
            link=link,
            entity_id=entity_id,
        )
        if created:
            result.created.append(record)
        else:
            result.duplicates += 1

    async def _review_context(self, review_id: str) -> tuple[Review | None, Business | None]:
        review = await self.store.get_review(review_id)
        if review is None or review.target_type != "business":
            return review, None
        return review, await self.store.get_business(review.target_id)

    def _review_link(self, review: Review, business: Business | None) -> str:
        if business is not None:
            return business_link(business)
        return f"/events/{review.target_id}"

    async def on_reply_created(self, review_id: str, reply_id: str, replier_id: str | None) -> FanoutResult:
        result = FanoutResult()
        review, business = await self._review_context(review_id)
        if review is None:
            logger.debug("Reply target review is gone", extra={"review_id": review_id})
            return result

        name = await self.actor_display_name(replier_id, business)

        await self._notify(
            result,
            actor_id=replier_id,
            recipient_id=review.user_id,
            kind="comment_reply",
            title="New reply to your review",
            message=f"{name} replied to your review",
            link=self._review_link(review, business),
            entity_id=f"reply:{reply_id}:author",
        )

        if business is not None and business.owner_id != review.user_id:
            await self._notify(
                result,
                actor_id=replier_id,
                recipient_id=business.owner_id,
                kind="review",
                title="New reply on your business",
                message=f"{name} replied to a review of {business.name}",
                link=owner_reviews_link(business),
                entity_id=f"reply:{reply_id}:owner",
            )

        return result

    async def on_review_created(self, review_id: str, author_id: str | None) -> FanoutResult:
        result = FanoutResult()
        review, business = await self._review_context(review_id)
        if review is None or business is None:
            return result

        if review.is_guest:
            name = review.guest_name or FALLBACK_ACTOR_NAME
        else:
            name = await self.actor_display_name(author_id)

        await self._notify(
            result,
            actor_id=author_id,
            recipient_id=business.owner_id,
            kind="review",
            title="New review",
            message=f"{name} left a {review.rating}-star review on {business.name}",
            link=owner_reviews_link(business),
            entity_id=f"review:{review.id}:owner",
        )
        return result

    async def check_highly_rated(self, business_id: str, actor_id: str | None = None) -> FanoutResult:
        """Notify the owner the first time the business meets the threshold."""
        result = FanoutResult()
        state = await self.engine.get_aggregate("business", business_id)
        if state is None:
            return result
        if state.review_count < self.config.highly_rated_min_reviews:
            return result
        if state.average_rating < self.config.highly_rated_threshold:
            return result

        business = await self.store.get_business(business_id)
        if business is None:
            return result

        await self._notify(
            result,
            actor_id=actor_id,
            recipient_id=business.owner_id,
            kind="highlyRated",
            title="Your business is highly rated!",
            message=(
                f"{business.name} now averages {state.average_rating:.1f} stars "
                f"across {state.review_count} reviews"
            ),
            link=business_link(business),
            entity_id=f"highly_rated:{business_id}",
        )
        return result

    async def on_badge_awarded(
        self, user_id: str, badge_id: str, badge_name: str, actor_id: str | None
    ) -> FanoutResult:
        result = FanoutResult()
        await self._notify(
            result,
            actor_id=actor_id,
            recipient_id=user_id,
            kind="badge",
            title="🏆 Badge Earned!",
            message=f"You earned the {badge_name} badge",
            link="/achievements",
            entity_id=f"badge:{badge_id}",
        )
        return result

    async def on_vote_created(self, review_id: str, voter_id: str) -> FanoutResult:
        result = FanoutResult()
        review, business = await self._review_context(review_id)
        if review is None:
            return result

        name = await self.actor_display_name(voter_id, business)
        await self._notify(
            result,
            actor_id=voter_id,
            recipient_id=review.user_id,
            kind="user",
            title="Your review was helpful",
            message=f"{name} found your review helpful",
            link=self._review_link(review, business),
            entity_id=f"helpful:{review_id}:{voter_id}",
        )
        return result

    async def handle(self, event: DomainEvent) -> FanoutResult:
        """Run the fan-out for one domain event."""
        kind = event.kind
        payload = event.payload

        if kind == EventKind.REPLY_CREATED:
            return await self.on_reply_created(payload["review_id"], event.resource_id, event.actor_id)

        if kind == EventKind.REVIEW_CREATED:
            result = await self.on_review_created(event.resource_id, event.actor_id)
            if payload.get("target_type") == "business":
                rated = await self.check_highly_rated(payload["target_id"], event.actor_id)
                result.created.extend(rated.created)
                result.duplicates += rated.duplicates
                result.suppressed += rated.suppressed
            return result

        if kind == EventKind.REVIEW_UPDATED and payload.get("target_type") == "business":
            return await self.check_highly_rated(payload["target_id"], event.actor_id)

        if kind == EventKind.BADGE_AWARDED:
            return await self.on_badge_awarded(
                payload["user_id"], payload["badge_id"], payload["badge_name"], event.actor_id
            )

        if kind == EventKind.VOTE_CREATED:
            return await self.on_vote_created(payload["review_id"], event.actor_id)

        return FanoutResult()
