"""
Resource descriptors consumed by the ownership resolver and policy evaluator.

A Resource is a read-only snapshot of exactly the attributes that
authorization needs: who owns it, which business team may act on it,
who authored it, and its visibility flags. The store builds one per
request; nothing here is cached.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ResourceType(Enum):
    BUSINESS = "business"
    EVENT = "event"
    REVIEW = "review"
    REPLY = "reply"
    IMAGE = "image"
    VOTE = "vote"
    TEAM_MEMBER = "team_member"
    NOTIFICATION = "notification"
    PROFILE_VIEW = "profile_view"
    CTA_CLICK = "cta_click"
    BADGE = "badge"
    IDENTITY = "identity"


class Operation(Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


# Review targets that accept reviews without an authenticated author.
GUEST_REVIEW_TARGETS = frozenset({ResourceType.EVENT})


@dataclass(frozen=True)
class Resource:
    """Authorization view of one resource.

    For resources that hang off a business (images, team members, profile
    views, CTA clicks) owner_id and business_id are those of the parent
    business. For a CREATE the resource does not exist yet, so id is None
    and the remaining attributes describe the intended row.

    Attributes:
        type: Resource type
        id: Resource id, None for a resource about to be created
        owner_id: Direct owner of the resource or of its parent business
        business_id: Business whose team members hold rights over the resource
        author_id: Author, voter or recipient, depending on type
        is_hidden: Hidden from everyone but administrators
        is_system: System-managed, hidden like is_hidden
        guest_allowed: Guests (no identity) may create this resource
    """

    type: ResourceType
    id: str | None = None
    owner_id: str | None = None
    business_id: str | None = None
    author_id: str | None = None
    is_hidden: bool = False
    is_system: bool = False
    guest_allowed: bool = False

    @property
    def restricted(self) -> bool:
        return self.is_hidden or self.is_system
