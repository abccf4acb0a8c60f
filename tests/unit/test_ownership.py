"""
Unit tests for the ownership resolver.

Tests cover:
- Direct owner, team member and administrator relations
- Unions of relations
- Guests and unknown identities holding nothing
"""

import pytest

from sayso_core.authz import OwnershipRelation, OwnershipResolver, Resource, ResourceType
from sayso_core.authz.ownership import NO_RELATIONS


class TestOwnershipResolver:
    """Tests for OwnershipResolver."""

    @pytest.fixture
    def resolver(self, store):
        return OwnershipResolver(store)

    @pytest.fixture
    async def business_resource(self, store, business):
        return await store.load_resource(ResourceType.BUSINESS, business.id)

    @pytest.mark.asyncio
    async def test_owner_is_direct_owner(self, resolver, owner, business_resource):
        relations = await resolver.resolve(owner.id, business_resource)

        assert relations == {OwnershipRelation.DIRECT_OWNER}

    @pytest.mark.asyncio
    async def test_team_member(self, resolver, store, alice, business, business_resource):
        """Team rows on the business grant TEAM_MEMBER."""
        await store.add_team_member(business.id, alice.id)

        relations = await resolver.resolve(alice.id, business_resource)

        assert relations == {OwnershipRelation.TEAM_MEMBER}

    @pytest.mark.asyncio
    async def test_admin_holds_administrator_everywhere(self, resolver, admin, business_resource):
        relations = await resolver.resolve(admin.id, business_resource)

        assert relations == {OwnershipRelation.ADMINISTRATOR}

    @pytest.mark.asyncio
    async def test_relations_are_a_union(self, resolver, store, owner, business, business_resource):
        """An owning admin holds both relations."""
        await store.set_role(owner.id, "admin")

        relations = await resolver.resolve(owner.id, business_resource)

        assert relations == {
            OwnershipRelation.DIRECT_OWNER,
            OwnershipRelation.ADMINISTRATOR,
        }

    @pytest.mark.asyncio
    async def test_stranger_holds_nothing(self, resolver, bob, business_resource):
        assert await resolver.resolve(bob.id, business_resource) == NO_RELATIONS

    @pytest.mark.asyncio
    async def test_guest_holds_nothing(self, resolver, business_resource):
        assert await resolver.resolve(None, business_resource) == NO_RELATIONS

    @pytest.mark.asyncio
    async def test_unknown_identity_holds_nothing(self, resolver, owner, business_resource):
        """An id the store does not know is treated as a guest."""
        assert await resolver.resolve("ghost", business_resource) == NO_RELATIONS

    @pytest.mark.asyncio
    async def test_missing_resource_holds_nothing(self, resolver, owner):
        assert await resolver.resolve(owner.id, None) == NO_RELATIONS

    @pytest.mark.asyncio
    async def test_removed_team_member_loses_relation(
        self, resolver, store, alice, business, business_resource
    ):
        await store.add_team_member(business.id, alice.id)
        await store.remove_team_member(business.id, alice.id)

        assert await resolver.resolve(alice.id, business_resource) == NO_RELATIONS

    @pytest.mark.asyncio
    async def test_image_inherits_business_relations(self, resolver, store, owner, business):
        """Images resolve through their business."""
        image_resource = Resource(
            type=ResourceType.IMAGE,
            id="img-1",
            owner_id=business.owner_id,
            business_id=business.id,
        )

        relations = await resolver.resolve(owner.id, image_resource)

        assert OwnershipRelation.DIRECT_OWNER in relations
