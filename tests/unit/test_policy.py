"""
Unit tests for the policy evaluator.

Tests cover:
- Allow and deny per rule
- Deny without a qualifying relation
- Hidden and system resources
- Guest reviews
- Fail-closed behavior
- Storage path ownership
"""

import logging

import pytest

from sayso_core.authz import (
    RULES,
    Operation,
    OwnershipResolver,
    PolicyEvaluator,
    Resource,
    ResourceType,
)
from sayso_core.errors import NOT_PERMITTED, TransientError, UnauthorizedError


class FailingResolver:
    """Resolver whose store is unreachable."""

    async def resolve(self, identity_id, resource):
        raise TransientError("Store unavailable")


class TestPolicyEvaluator:
    """Tests for PolicyEvaluator."""

    @pytest.fixture
    def policy(self, store):
        return PolicyEvaluator(OwnershipResolver(store))

    @pytest.fixture
    async def business_resource(self, store, business):
        return await store.load_resource(ResourceType.BUSINESS, business.id)

    def test_every_type_has_all_operations(self):
        """The rule table covers all four operations of every type."""
        for resource_type in ResourceType:
            for operation in Operation:
                assert (resource_type, operation) in RULES

    @pytest.mark.asyncio
    async def test_owner_may_update(self, policy, owner, business_resource):
        decision = await policy.authorize(owner.id, business_resource, Operation.UPDATE)

        assert decision.allowed
        assert decision.rule == "business.update"

    @pytest.mark.asyncio
    async def test_team_member_may_update_not_delete(
        self, policy, store, alice, business, business_resource
    ):
        await store.add_team_member(business.id, alice.id)

        update = await policy.authorize(alice.id, business_resource, Operation.UPDATE)
        delete = await policy.authorize(alice.id, business_resource, Operation.DELETE)

        assert update.allowed
        assert not delete.allowed

    @pytest.mark.asyncio
    async def test_stranger_denied(self, policy, bob, business_resource):
        """No relation, no mutation."""
        for operation in (Operation.UPDATE, Operation.DELETE):
            decision = await policy.authorize(bob.id, business_resource, operation)
            assert not decision.allowed
            assert decision.reason == "no qualifying relation"

    @pytest.mark.asyncio
    async def test_admin_may_delete(self, policy, admin, business_resource):
        decision = await policy.authorize(admin.id, business_resource, Operation.DELETE)

        assert decision.allowed

    @pytest.mark.asyncio
    async def test_hidden_business_visible_to_admin_only(self, policy, store, owner, admin, bob):
        hidden = await store.create_business(owner.id, "Back Room", fields={"is_hidden": True})
        resource = await store.load_resource(ResourceType.BUSINESS, hidden.id)

        assert not (await policy.authorize(bob.id, resource, Operation.READ)).allowed
        assert not (await policy.authorize(None, resource, Operation.READ)).allowed
        assert (await policy.authorize(admin.id, resource, Operation.READ)).allowed

    @pytest.mark.asyncio
    async def test_visible_business_readable_by_guests(self, policy, business_resource):
        decision = await policy.authorize(None, business_resource, Operation.READ)

        assert decision.allowed

    @pytest.mark.asyncio
    async def test_guest_review_only_on_permitted_targets(self, policy):
        """Guests may review targets that accept guest reviews."""
        on_event = Resource(type=ResourceType.REVIEW, guest_allowed=True)
        on_business = Resource(type=ResourceType.REVIEW, guest_allowed=False)

        assert (await policy.authorize(None, on_event, Operation.CREATE)).allowed
        assert not (await policy.authorize(None, on_business, Operation.CREATE)).allowed

    @pytest.mark.asyncio
    async def test_review_author_must_match_identity(self, policy, alice, bob):
        """Nobody creates a review in another identity's name."""
        as_bob = Resource(type=ResourceType.REVIEW, author_id=bob.id)
        as_alice = Resource(type=ResourceType.REVIEW, author_id=alice.id)

        assert not (await policy.authorize(alice.id, as_bob, Operation.CREATE)).allowed
        assert (await policy.authorize(alice.id, as_alice, Operation.CREATE)).allowed

    @pytest.mark.asyncio
    async def test_guest_cannot_claim_an_author(self, policy, alice):
        resource = Resource(type=ResourceType.REVIEW, author_id=alice.id, guest_allowed=True)

        assert not (await policy.authorize(None, resource, Operation.CREATE)).allowed

    @pytest.mark.asyncio
    async def test_notification_create_denied_to_everyone(self, policy, alice, admin):
        """Only the fan-out writes notifications."""
        resource = Resource(type=ResourceType.NOTIFICATION, author_id=alice.id)

        for identity_id in (alice.id, admin.id, None):
            decision = await policy.authorize(identity_id, resource, Operation.CREATE)
            assert not decision.allowed

    @pytest.mark.asyncio
    async def test_votes_cannot_be_updated(self, policy, alice):
        resource = Resource(type=ResourceType.VOTE, id="r1:alice", author_id=alice.id)

        assert not (await policy.authorize(alice.id, resource, Operation.UPDATE)).allowed
        assert (await policy.authorize(alice.id, resource, Operation.DELETE)).allowed

    @pytest.mark.asyncio
    async def test_missing_resource_denied(self, policy, admin):
        decision = await policy.authorize(admin.id, None, Operation.READ)

        assert not decision.allowed
        assert decision.rule == "resource.exists"

    @pytest.mark.asyncio
    async def test_store_failure_denies(self, owner, business_resource):
        """Resolution errors fail closed."""
        policy = PolicyEvaluator(FailingResolver())

        decision = await policy.authorize(owner.id, business_resource, Operation.UPDATE)

        assert not decision.allowed
        assert decision.reason == "store unavailable"

    @pytest.mark.asyncio
    async def test_authorize_or_raise(self, policy, bob, business_resource):
        with pytest.raises(UnauthorizedError) as exc_info:
            await policy.authorize_or_raise(bob.id, business_resource, Operation.DELETE)

        assert exc_info.value.message == NOT_PERMITTED
        assert exc_info.value.rule == "business.delete"

    @pytest.mark.asyncio
    async def test_denials_are_audited(self, policy, bob, business_resource, caplog):
        with caplog.at_level(logging.INFO, logger="sayso_core.authz.audit"):
            await policy.authorize(bob.id, business_resource, Operation.DELETE)

        assert any(record.rule == "business.delete" for record in caplog.records)

    @pytest.mark.asyncio
    async def test_owns_storage_path(self, policy, store, owner, alice, bob, business):
        """The first path segment names the business."""
        await store.add_team_member(business.id, alice.id)
        path = f"{business.id}/gallery/front.jpg"

        assert await policy.owns_storage_path(owner.id, path)
        assert await policy.owns_storage_path(alice.id, path)
        assert not await policy.owns_storage_path(bob.id, path)
        assert not await policy.owns_storage_path(None, path)
        assert not await policy.owns_storage_path(owner.id, "no-such-business/a.jpg")
        assert not await policy.owns_storage_path(owner.id, "")
