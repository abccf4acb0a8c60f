"""
Mutation surface of Sayso Core.

CoreService is what a boundary layer (HTTP handlers, jobs) calls. Every
mutation follows the same path:
1. Load the authorization view of the target and run the policy evaluator
2. Commit through the store, or through the uniqueness guard when a
   singleton or pair-uniqueness invariant is involved
3. Emit a DomainEvent; the reactor handles it inline or via the bus

Invariants:
    - Nothing is written before authorization succeeds
    - Reaction outcome never changes the caller's result; a committed
      mutation is reported as committed even if its reactions failed
    - Authorization fails closed when the store cannot be read

How to change safely:
    - New mutations need a rule in authz.policy.RULES and, if they feed
      aggregates or notifications, an EventKind with handlers
    - Keep emits after commit; never emit from inside a transaction
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from .authz.ownership import OwnershipRelation, OwnershipResolver
from .authz.policy import PolicyEvaluator
from .authz.resources import GUEST_REVIEW_TARGETS, Operation, Resource, ResourceType
from .bus.base import BusError, EventBus
from .config import BusConfig, CoreConfig, ReactionMode
from .errors import (
    ConflictError,
    NotFoundError,
    TransientError,
    UnauthorizedError,
    ValidationError,
)
from .events import DomainEvent, EventKind
from .guard import UniquenessGuard
from .reactions.derived_state import DerivedStateEngine
from .reactions.fanout import NotificationFanout
from .reactions.reactor import ReactionResult, Reactor
from .store.database import Database
from .store.notification_store import NotificationStore
from .store.platform_store import PlatformStore
from .store.rate_limit_store import RateLimitStore
from .store.records import (
    BUSINESS_FLAG_FIELDS,
    AggregateState,
    Business,
    Event,
    Identity,
    IdentityRemoval,
    Image,
    NotificationRecord,
    Review,
    ReviewReply,
    TeamMember,
)

logger = logging.getLogger(__name__)

# Missing resources of these types are reported as NotFoundError. Anything
# else is reported as UnauthorizedError so its existence is not revealed.
NOT_FOUND_VISIBLE = frozenset(
    {
        ResourceType.BUSINESS,
        ResourceType.EVENT,
        ResourceType.REVIEW,
        ResourceType.REPLY,
        ResourceType.IMAGE,
        ResourceType.TEAM_MEMBER,
        ResourceType.PROFILE_VIEW,
        ResourceType.CTA_CLICK,
    }
)

REVIEW_TARGET_TYPES = {"business": ResourceType.BUSINESS, "event": ResourceType.EVENT}


class CoreService:
    """Authorized mutations over the shared store.

    Example:
        >>> service = CoreService.build(db)
        >>> business = await service.create_business(owner_id, name="Corner Cafe")
        >>> await service.create_review(alice_id, target_type="business",
        ...                             target_id=business.id, rating=5, content="Great")
    """

    def __init__(
        self,
        store: PlatformStore,
        notifications: NotificationStore,
        rate_limits: RateLimitStore,
        policy: PolicyEvaluator,
        guard: UniquenessGuard,
        engine: DerivedStateEngine,
        reactor: Reactor,
        bus: EventBus | None = None,
        bus_config: BusConfig | None = None,
    ) -> None:
        self.store = store
        self.notifications = notifications
        self.rate_limits = rate_limits
        self.policy = policy
        self.guard = guard
        self.engine = engine
        self.reactor = reactor
        self.bus = bus
        self.bus_config = bus_config or BusConfig()

    @classmethod
    def build(
        cls,
        db: Database,
        config: CoreConfig | None = None,
        bus: EventBus | None = None,
    ) -> CoreService:
        """Wire every component against one database."""
        config = config or CoreConfig()
        store = PlatformStore(db)
        notifications = NotificationStore(db)
        engine = DerivedStateEngine(db)
        fanout = NotificationFanout(store, notifications, engine, config.notifications)
        reactor = Reactor(
            db,
            engine,
            fanout,
            bus=bus,
            topic=config.bus.topic,
            group_id=config.kafka.consumer_group,
            config=config.reactor,
        )
        return cls(
            store=store,
            notifications=notifications,
            rate_limits=RateLimitStore(db),
            policy=PolicyEvaluator(OwnershipResolver(store)),
            guard=UniquenessGuard(db),
            engine=engine,
            reactor=reactor,
            bus=bus,
            bus_config=config.bus,
        )

    # ── Plumbing ─────────────────────────────────────────────────────

    async def _emit(self, event: DomainEvent) -> ReactionResult | None:
        """Hand a committed event to the reactor, inline or via the bus."""
        if self.bus_config.reaction_mode == ReactionMode.QUEUE and self.bus is not None:
            try:
                await self.bus.publish(self.bus_config.topic, event.partition_key, event.to_bytes())
                return None
            except BusError as e:
                logger.error(
                    "Publishing domain event failed, reacting inline",
                    extra={"event_id": event.event_id, "kind": event.kind.value, "error": str(e)},
                )
        return await self.reactor.handle(event)

    async def _load(self, resource_type: ResourceType, resource_id: str) -> Resource | None:
        try:
            return await self.store.load_resource(resource_type, resource_id)
        except (TransientError, sqlite3.Error) as e:
            logger.error(
                "Store unavailable during authorization, denying",
                extra={"resource_type": resource_type.value, "error": str(e)},
            )
            raise UnauthorizedError(rule="store.unavailable") from e

    async def _authorize(
        self,
        identity_id: str | None,
        resource_type: ResourceType,
        resource_id: str,
        operation: Operation,
    ) -> Resource:
        resource = await self._load(resource_type, resource_id)
        if resource is None and resource_type in NOT_FOUND_VISIBLE:
            raise NotFoundError(resource_type.value, resource_id)
        await self.policy.authorize_or_raise(identity_id, resource, operation)
        return resource

    async def _is_admin(self, identity_id: str | None) -> bool:
        if identity_id is None:
            return False
        subject = Resource(type=ResourceType.IDENTITY, id=identity_id)
        try:
            relations = await self.policy.resolver.resolve(identity_id, subject)
        except (TransientError, sqlite3.Error) as e:
            logger.error(
                "Store unavailable during role lookup, denying",
                extra={"identity_id": identity_id, "error": str(e)},
            )
            raise UnauthorizedError(rule="store.unavailable") from e
        return OwnershipRelation.ADMINISTRATOR in relations

    # ── Businesses ───────────────────────────────────────────────────

    async def create_business(self, identity_id: str | None, name: str, **fields: Any) -> Business:
        """Create a business owned by the requesting identity.

        Raises:
            UnauthorizedError: For guests, or non-admins setting visibility flags
            ValidationError: If name is empty
        """
        await self.policy.authorize_or_raise(
            identity_id, Resource(type=ResourceType.BUSINESS), Operation.CREATE
        )
        if any(flag in fields for flag in BUSINESS_FLAG_FIELDS) and not await self._is_admin(
            identity_id
        ):
            raise UnauthorizedError(rule="business.flags")

        business = await self.store.create_business(
            owner_id=identity_id, name=name, fields=fields, created_by=identity_id
        )
        await self._emit(
            DomainEvent(
                kind=EventKind.BUSINESS_CREATED,
                actor_id=identity_id,
                resource_type="business",
                resource_id=business.id,
                ts_ms=business.created_at,
            )
        )
        return business

    async def update_business(
        self, identity_id: str | None, business_id: str, changes: dict[str, Any]
    ) -> Business:
        """Partially update a business.

        Raises:
            NotFoundError: If the business does not exist
            UnauthorizedError: If not owner, team member or admin, or if a
                non-admin changes visibility flags
            ValidationError: If changes names a non-editable field or clears the name
        """
        await self._authorize(identity_id, ResourceType.BUSINESS, business_id, Operation.UPDATE)
        if any(flag in changes for flag in BUSINESS_FLAG_FIELDS) and not await self._is_admin(
            identity_id
        ):
            raise UnauthorizedError(rule="business.flags")

        updated = await self.store.update_business(business_id, changes)
        if updated is None:
            raise NotFoundError("business", business_id)
        before, after = updated

        before_values = before.snapshot()
        after_values = after.snapshot()
        await self._emit(
            DomainEvent(
                kind=EventKind.BUSINESS_UPDATED,
                actor_id=identity_id,
                resource_type="business",
                resource_id=business_id,
                payload={
                    "before": {key: before_values[key] for key in changes},
                    "after": {key: after_values[key] for key in changes},
                },
                ts_ms=after.updated_at,
            )
        )
        return after

    async def delete_business(self, identity_id: str | None, business_id: str) -> Business:
        await self._authorize(identity_id, ResourceType.BUSINESS, business_id, Operation.DELETE)
        deleted = await self.store.delete_business(business_id)
        if deleted is None:
            raise NotFoundError("business", business_id)
        await self._emit(
            DomainEvent(
                kind=EventKind.BUSINESS_DELETED,
                actor_id=identity_id,
                resource_type="business",
                resource_id=business_id,
            )
        )
        return deleted

    async def add_team_member(
        self,
        identity_id: str | None,
        business_id: str,
        member_id: str,
        role: str = "manager",
    ) -> TeamMember:
        business = await self._load(ResourceType.BUSINESS, business_id)
        if business is None:
            raise NotFoundError("business", business_id)
        membership = Resource(
            type=ResourceType.TEAM_MEMBER,
            owner_id=business.owner_id,
            business_id=business_id,
            author_id=member_id,
        )
        await self.policy.authorize_or_raise(identity_id, membership, Operation.CREATE)
        return await self.store.add_team_member(business_id, member_id, role)

    async def remove_team_member(
        self, identity_id: str | None, business_id: str, member_id: str
    ) -> bool:
        """Remove a member. Owners and admins may remove anyone; members may leave."""
        await self._authorize(
            identity_id, ResourceType.TEAM_MEMBER, f"{business_id}:{member_id}", Operation.DELETE
        )
        return await self.store.remove_team_member(business_id, member_id)

    # ── Events ───────────────────────────────────────────────────────

    async def create_event(
        self,
        identity_id: str | None,
        title: str,
        description: str | None = None,
        starts_at: int | None = None,
    ) -> Event:
        await self.policy.authorize_or_raise(
            identity_id, Resource(type=ResourceType.EVENT), Operation.CREATE
        )
        event = await self.store.create_event(
            owner_id=identity_id,
            title=title,
            description=description,
            starts_at=starts_at,
            created_by=identity_id,
        )
        await self._emit(
            DomainEvent(
                kind=EventKind.EVENT_CREATED,
                actor_id=identity_id,
                resource_type="event",
                resource_id=event.id,
                ts_ms=event.created_at,
            )
        )
        return event

    async def ingest_events(
        self, rows: list[dict[str, Any]], source: str
    ) -> list[tuple[Event, bool]]:
        """Upsert provider events as ordinary event resources.

        Called by the ingestion job, which runs with system privileges.

        Returns:
            (event, created) per row
        """
        results = await self.store.upsert_ingested_events(rows, source)
        for event, created in results:
            if created:
                await self._emit(
                    DomainEvent(
                        kind=EventKind.EVENT_CREATED,
                        resource_type="event",
                        resource_id=event.id,
                        payload={"source": source},
                        ts_ms=event.created_at,
                    )
                )
        return results

    # ── Reviews and replies ──────────────────────────────────────────

    async def create_review(
        self,
        identity_id: str | None,
        target_type: str,
        target_id: str,
        rating: int,
        content: str,
        title: str | None = None,
        author_id: str | None = None,
        guest_name: str | None = None,
        guest_email: str | None = None,
        guest_ip: str | None = None,
    ) -> Review:
        """Create a review on a business or event.

        Args:
            identity_id: Requesting identity, None for a guest
            author_id: Author named by the request (defaults to identity_id);
                must equal identity_id unless this is a guest review

        Raises:
            ValidationError: If target_type is unknown or the rating is invalid
            NotFoundError: If the target does not exist
            UnauthorizedError: If the author does not match the identity, or a
                guest reviews a target that does not accept guest reviews
        """
        target_resource_type = REVIEW_TARGET_TYPES.get(target_type)
        if target_resource_type is None:
            raise ValidationError(f"Unknown review target: {target_type}", field_name="target_type")
        await self._authorize(identity_id, target_resource_type, target_id, Operation.READ)

        claimed_author = author_id if author_id is not None else identity_id
        review_resource = Resource(
            type=ResourceType.REVIEW,
            author_id=claimed_author,
            guest_allowed=target_resource_type in GUEST_REVIEW_TARGETS,
        )
        await self.policy.authorize_or_raise(identity_id, review_resource, Operation.CREATE)

        review = await self.store.create_review(
            target_type=target_type,
            target_id=target_id,
            user_id=claimed_author,
            rating=rating,
            content=content,
            title=title,
            guest_name=guest_name,
            guest_email=guest_email,
            guest_ip=guest_ip,
        )
        await self._emit(
            DomainEvent(
                kind=EventKind.REVIEW_CREATED,
                actor_id=identity_id,
                resource_type="review",
                resource_id=review.id,
                payload={"target_type": target_type, "target_id": target_id, "rating": rating},
                ts_ms=review.created_at,
            )
        )
        return review

    async def update_review(
        self, identity_id: str | None, review_id: str, changes: dict[str, Any]
    ) -> Review:
        await self._authorize(identity_id, ResourceType.REVIEW, review_id, Operation.UPDATE)
        updated = await self.store.update_review(review_id, changes)
        if updated is None:
            raise NotFoundError("review", review_id)
        before, after = updated
        await self._emit(
            DomainEvent(
                kind=EventKind.REVIEW_UPDATED,
                actor_id=identity_id,
                resource_type="review",
                resource_id=review_id,
                payload={
                    "target_type": after.target_type,
                    "target_id": after.target_id,
                    "rating_changed": before.rating != after.rating,
                },
                ts_ms=after.updated_at,
            )
        )
        return after

    async def delete_review(self, identity_id: str | None, review_id: str) -> Review:
        await self._authorize(identity_id, ResourceType.REVIEW, review_id, Operation.DELETE)
        deleted = await self.store.delete_review(review_id)
        if deleted is None:
            raise NotFoundError("review", review_id)
        await self._emit(
            DomainEvent(
                kind=EventKind.REVIEW_DELETED,
                actor_id=identity_id,
                resource_type="review",
                resource_id=review_id,
                payload={"target_type": deleted.target_type, "target_id": deleted.target_id},
            )
        )
        return deleted

    async def create_reply(
        self, identity_id: str | None, review_id: str, content: str
    ) -> ReviewReply:
        await self._authorize(identity_id, ResourceType.REVIEW, review_id, Operation.READ)
        await self.policy.authorize_or_raise(
            identity_id,
            Resource(type=ResourceType.REPLY, author_id=identity_id),
            Operation.CREATE,
        )
        reply = await self.store.create_reply(review_id, identity_id, content)
        await self._emit(
            DomainEvent(
                kind=EventKind.REPLY_CREATED,
                actor_id=identity_id,
                resource_type="reply",
                resource_id=reply.id,
                payload={"review_id": review_id},
                ts_ms=reply.created_at,
            )
        )
        return reply

    # ── Images ───────────────────────────────────────────────────────

    async def add_image(
        self,
        identity_id: str | None,
        business_id: str,
        url: str,
        storage_path: str | None = None,
        image_type: str = "gallery",
        sort_order: int = 0,
        is_primary: bool = False,
    ) -> Image:
        """Attach an image to a business.

        Raises:
            UnauthorizedError: If not owner, team member or admin of the
                business, or storage_path lies under another business
        """
        business = await self._load(ResourceType.BUSINESS, business_id)
        if business is None:
            raise NotFoundError("business", business_id)
        await self.policy.authorize_or_raise(
            identity_id,
            Resource(
                type=ResourceType.IMAGE,
                owner_id=business.owner_id,
                business_id=business_id,
            ),
            Operation.CREATE,
        )
        if storage_path is not None:
            segment = storage_path.strip("/").split("/", 1)[0]
            if segment != business_id or not await self.policy.owns_storage_path(
                identity_id, storage_path
            ):
                raise UnauthorizedError(rule="image.storage_path")

        return await self.guard.add_image(
            business_id,
            url,
            storage_path=storage_path,
            image_type=image_type,
            sort_order=sort_order,
            is_primary=is_primary,
            uploaded_by=identity_id,
        )

    async def set_primary_image(self, identity_id: str | None, image_id: str) -> Image:
        image = await self._authorize(identity_id, ResourceType.IMAGE, image_id, Operation.UPDATE)
        return await self.guard.set_primary_image(image.business_id, image_id)

    async def delete_image(
        self, identity_id: str | None, image_id: str
    ) -> tuple[Image, Image | None]:
        """Delete an image.

        Returns:
            (deleted image, image promoted to primary or None)
        """
        await self._authorize(identity_id, ResourceType.IMAGE, image_id, Operation.DELETE)
        outcome = await self.guard.delete_image(image_id)
        if outcome is None:
            raise NotFoundError("image", image_id)
        return outcome

    async def owns_storage_path(self, identity_id: str | None, object_name: str) -> bool:
        return await self.policy.owns_storage_path(identity_id, object_name)

    # ── Votes ────────────────────────────────────────────────────────

    async def cast_vote(self, identity_id: str | None, review_id: str) -> bool:
        """Mark a review helpful.

        Returns:
            True if the vote was recorded, False if it already existed
        """
        await self._authorize(identity_id, ResourceType.REVIEW, review_id, Operation.READ)
        await self.policy.authorize_or_raise(
            identity_id,
            Resource(type=ResourceType.VOTE, author_id=identity_id),
            Operation.CREATE,
        )
        try:
            await self.guard.cast_vote(review_id, identity_id)
        except ConflictError:
            logger.debug("Duplicate vote ignored", extra={"review_id": review_id})
            return False

        review = await self.store.get_review(review_id)
        payload = {"review_id": review_id}
        if review is not None:
            payload.update(target_type=review.target_type, target_id=review.target_id)
        await self._emit(
            DomainEvent(
                kind=EventKind.VOTE_CREATED,
                actor_id=identity_id,
                resource_type="vote",
                resource_id=f"{review_id}:{identity_id}",
                payload=payload,
            )
        )
        return True

    async def remove_vote(self, identity_id: str | None, review_id: str) -> bool:
        """Withdraw a helpful vote.

        Returns:
            True if a vote was removed, False if there was none
        """
        if identity_id is None:
            raise UnauthorizedError(rule="vote.delete")
        vote_id = f"{review_id}:{identity_id}"
        vote = await self._load(ResourceType.VOTE, vote_id)
        if vote is None:
            return False
        await self.policy.authorize_or_raise(identity_id, vote, Operation.DELETE)

        if not await self.guard.remove_vote(review_id, identity_id):
            return False

        review = await self.store.get_review(review_id)
        payload = {"review_id": review_id}
        if review is not None:
            payload.update(target_type=review.target_type, target_id=review.target_id)
        await self._emit(
            DomainEvent(
                kind=EventKind.VOTE_DELETED,
                actor_id=identity_id,
                resource_type="vote",
                resource_id=vote_id,
                payload=payload,
            )
        )
        return True

    # ── Badges and activity ──────────────────────────────────────────

    async def award_badge(
        self, identity_id: str | None, user_id: str, badge_id: str, badge_name: str
    ) -> bool:
        """Award a badge (administrators only).

        Returns:
            True if newly awarded
        """
        await self.policy.authorize_or_raise(
            identity_id, Resource(type=ResourceType.BADGE, author_id=user_id), Operation.CREATE
        )
        if not await self.store.award_badge(user_id, badge_id, badge_name):
            return False
        await self._emit(
            DomainEvent(
                kind=EventKind.BADGE_AWARDED,
                actor_id=identity_id,
                resource_type="badge",
                resource_id=f"{user_id}:{badge_id}",
                payload={"user_id": user_id, "badge_id": badge_id, "badge_name": badge_name},
            )
        )
        return True

    async def record_profile_view(self, identity_id: str | None, business_id: str) -> int:
        await self._authorize(identity_id, ResourceType.PROFILE_VIEW, business_id, Operation.CREATE)
        return await self.store.record_profile_view(business_id, identity_id)

    async def record_cta_click(
        self, identity_id: str | None, business_id: str, cta_type: str
    ) -> int:
        await self._authorize(identity_id, ResourceType.CTA_CLICK, business_id, Operation.CREATE)
        return await self.store.record_cta_click(business_id, identity_id, cta_type)

    async def get_business_activity(
        self, identity_id: str | None, business_id: str
    ) -> dict[str, Any]:
        await self._authorize(identity_id, ResourceType.PROFILE_VIEW, business_id, Operation.READ)
        return await self.store.get_activity_counts(business_id)

    async def get_aggregate(self, target_type: str, target_id: str) -> AggregateState | None:
        return await self.engine.get_aggregate(target_type, target_id)

    # ── Notifications ────────────────────────────────────────────────

    async def list_notifications(
        self,
        identity_id: str | None,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationRecord]:
        if identity_id is None:
            raise UnauthorizedError(rule="notification.read")
        return await self.notifications.list_for(identity_id, unread_only, limit, offset)

    async def count_unread_notifications(self, identity_id: str | None) -> int:
        if identity_id is None:
            raise UnauthorizedError(rule="notification.read")
        return await self.notifications.get_unread_count(identity_id)

    async def mark_notifications_read(
        self, identity_id: str | None, notification_ids: list[str]
    ) -> int:
        """Mark the caller's notifications read; other recipients' ids are ignored."""
        if identity_id is None:
            raise UnauthorizedError(rule="notification.update")
        return await self.notifications.mark_read(identity_id, notification_ids)

    async def mark_all_notifications_read(self, identity_id: str | None) -> int:
        """Mark every unread notification of the caller read.

        Returns:
            Number of notifications changed
        """
        if identity_id is None:
            raise UnauthorizedError(rule="notification.update")
        return await self.notifications.mark_all_read(identity_id)

    async def delete_notification(self, identity_id: str | None, notification_id: str) -> bool:
        await self._authorize(
            identity_id, ResourceType.NOTIFICATION, notification_id, Operation.DELETE
        )
        return await self.notifications.delete(identity_id, notification_id)

    # ── Identities ───────────────────────────────────────────────────

    async def set_role(self, identity_id: str | None, target_user_id: str, role: str) -> Identity:
        """Change a platform role (administrators only)."""
        await self._authorize(identity_id, ResourceType.IDENTITY, target_user_id, Operation.UPDATE)
        identity = await self.store.set_role(target_user_id, role)
        if identity is None:
            raise NotFoundError("identity", target_user_id)
        logger.info(
            "Role changed",
            extra={"actor_id": identity_id, "identity_id": target_user_id, "role": role},
        )
        return identity

    async def delete_identity(
        self, identity_id: str | None, target_user_id: str
    ) -> IdentityRemoval:
        """Delete an identity (itself, or any identity for administrators).

        Reviews and votes go with it through the schema cascade; the
        emitted event lists what they fed so aggregates and helpful counts
        are recomputed.

        Raises:
            UnauthorizedError: If the caller is neither the identity nor an admin
            NotFoundError: If the identity disappeared after authorization
        """
        await self._authorize(identity_id, ResourceType.IDENTITY, target_user_id, Operation.DELETE)
        removal = await self.store.delete_identity(target_user_id)
        if removal is None:
            raise NotFoundError("identity", target_user_id)

        await self._emit(
            DomainEvent(
                kind=EventKind.IDENTITY_DELETED,
                actor_id=identity_id,
                resource_type="identity",
                resource_id=target_user_id,
                payload={
                    "review_targets": [list(target) for target in removal.review_targets],
                    "voted_review_ids": removal.voted_review_ids,
                },
            )
        )
        logger.info(
            "Identity deleted",
            extra={"actor_id": identity_id, "identity_id": target_user_id},
        )
        return removal
