"""
Ownership resolution for Sayso Core.

Given an identity and a resource, the resolver answers which ownership
relations hold: direct owner, member of the owning business's team, or
platform administrator. The three checks are independent and their
results are unioned.

Invariants:
    - A guest (no identity) resolves to the empty set
    - An absent resource resolves to the empty set, not an error
    - Nothing is cached; every call reads current stored state
    - Resolution never writes

How to change safely:
    - A new relation needs a new enum member and a rule that uses it;
      unused relations grant nothing
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from .resources import Resource

if TYPE_CHECKING:
    from ..store.platform_store import PlatformStore

logger = logging.getLogger(__name__)


class OwnershipRelation(Enum):
    """How an identity relates to a resource."""

    DIRECT_OWNER = "direct_owner"
    TEAM_MEMBER = "team_member"
    ADMINISTRATOR = "administrator"


NO_RELATIONS: frozenset[OwnershipRelation] = frozenset()


class OwnershipResolver:
    """Computes ownership relations against the platform store.

    Thread safety:
        Stateless apart from the store handle; safe to share.

    Example:
        >>> resolver = OwnershipResolver(store)
        >>> await resolver.resolve("user-1", business_resource)
        frozenset({<OwnershipRelation.DIRECT_OWNER: 'direct_owner'>})
    """

    def __init__(self, store: PlatformStore) -> None:
        self.store = store

    async def resolve(
        self, identity_id: str | None, resource: Resource | None
    ) -> frozenset[OwnershipRelation]:
        """Compute the relations an identity holds over a resource.

        Args:
            identity_id: Requesting identity, None for a guest
            resource: Target resource, None if it does not exist

        Returns:
            Union of the relations that hold
        """
        if identity_id is None or resource is None:
            return NO_RELATIONS

        identity = await self.store.get_identity(identity_id)
        if identity is None:
            # Unknown identities are treated as guests.
            return NO_RELATIONS

        relations: set[OwnershipRelation] = set()

        if resource.owner_id is not None and resource.owner_id == identity.id:
            relations.add(OwnershipRelation.DIRECT_OWNER)

        if resource.business_id is not None and await self.store.is_team_member(
            resource.business_id, identity.id
        ):
            relations.add(OwnershipRelation.TEAM_MEMBER)

        if identity.is_admin:
            relations.add(OwnershipRelation.ADMINISTRATOR)

        return frozenset(relations)
