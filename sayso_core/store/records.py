"""
Row types for the shared Sayso store.

Each dataclass mirrors one table in schema.py and knows how to build
itself from a sqlite3.Row. Times are Unix milliseconds.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any

# Fields whose change counts as real activity on a business.
MEANINGFUL_BUSINESS_FIELDS = (
    "name",
    "description",
    "address",
    "phone",
    "email",
    "website",
    "image_url",
    "price_range",
    "verified",
)

# Fields that may change without bumping freshness.
BOOKKEEPING_BUSINESS_FIELDS = ("slug", "internal_notes")

# Visibility flags. Only administrators may change these.
BUSINESS_FLAG_FIELDS = ("is_hidden", "is_system")

EDITABLE_BUSINESS_FIELDS = (
    MEANINGFUL_BUSINESS_FIELDS + BOOKKEEPING_BUSINESS_FIELDS + BUSINESS_FLAG_FIELDS
)


@dataclass
class Identity:
    """An authenticated principal.

    Attributes:
        id: Identity id issued by the auth provider
        email: Login email
        role: Platform role, "user" or "admin"
        display_name: Optional name from the auth provider
        created_at: Creation timestamp (Unix ms)
    """

    id: str
    email: str
    role: str
    display_name: str | None
    created_at: int

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Identity:
        return cls(
            id=row["id"],
            email=row["email"],
            role=row["role"],
            display_name=row["display_name"],
            created_at=row["created_at"],
        )


@dataclass
class IdentityRemoval:
    """What a deleted identity took with it through the schema cascade.

    Attributes:
        identity: The deleted identity
        review_targets: (target_type, target_id) of each removed review
        voted_review_ids: Surviving reviews that lost this identity's vote
    """

    identity: Identity
    review_targets: list[tuple[str, str]] = field(default_factory=list)
    voted_review_ids: list[str] = field(default_factory=list)


@dataclass
class Profile:
    """Public profile attached to an identity."""

    user_id: str
    display_name: str | None
    username: str | None
    email: str | None
    account_type: str | None
    account_identity_id: str | None
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Profile:
        return cls(
            user_id=row["user_id"],
            display_name=row["display_name"],
            username=row["username"],
            email=row["email"],
            account_type=row["account_type"],
            account_identity_id=row["account_identity_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Business:
    """A business listing.

    Attributes:
        id: Business id
        owner_id: Direct owner, None for unclaimed listings
        name: Display name
        fields: Remaining editable columns keyed by column name
        is_hidden: Hidden from everyone but administrators
        is_system: System-managed listing, hidden like is_hidden
        created_by: Identity that created the row (audit only)
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    id: str
    owner_id: str | None
    name: str
    fields: dict[str, Any] = field(default_factory=dict)
    is_hidden: bool = False
    is_system: bool = False
    created_by: str | None = None
    created_at: int = 0
    updated_at: int = 0

    def snapshot(self) -> dict[str, Any]:
        """Editable column values, including name and flags."""
        values = {"name": self.name, **self.fields}
        values["is_hidden"] = self.is_hidden
        values["is_system"] = self.is_system
        return values

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Business:
        fields = {
            name: row[name]
            for name in MEANINGFUL_BUSINESS_FIELDS + BOOKKEEPING_BUSINESS_FIELDS
            if name != "name"
        }
        fields["verified"] = bool(fields["verified"])
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            fields=fields,
            is_hidden=bool(row["is_hidden"]),
            is_system=bool(row["is_system"]),
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class TeamMember:
    business_id: str
    user_id: str
    role: str
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> TeamMember:
        return cls(
            business_id=row["business_id"],
            user_id=row["user_id"],
            role=row["role"],
            created_at=row["created_at"],
        )


@dataclass
class Event:
    """An event listing, created by users or by the ingestion collaborator."""

    id: str
    title: str
    description: str | None
    starts_at: int | None
    owner_id: str | None
    created_by: str | None
    is_hidden: bool
    is_system: bool
    source: str | None
    external_id: str | None
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Event:
        return cls(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            starts_at=row["starts_at"],
            owner_id=row["owner_id"],
            created_by=row["created_by"],
            is_hidden=bool(row["is_hidden"]),
            is_system=bool(row["is_system"]),
            source=row["source"],
            external_id=row["external_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Review:
    """A rating with text on a business or event.

    A review with user_id None was written by a guest; guest_name is
    then always set.
    """

    id: str
    target_type: str
    target_id: str
    user_id: str | None
    rating: int
    content: str
    title: str | None = None
    guest_name: str | None = None
    guest_email: str | None = None
    guest_ip: str | None = None
    helpful_count: int = 0
    created_at: int = 0
    updated_at: int = 0

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Review:
        return cls(
            id=row["id"],
            target_type=row["target_type"],
            target_id=row["target_id"],
            user_id=row["user_id"],
            rating=row["rating"],
            content=row["content"],
            title=row["title"],
            guest_name=row["guest_name"],
            guest_email=row["guest_email"],
            guest_ip=row["guest_ip"],
            helpful_count=row["helpful_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class ReviewReply:
    id: str
    review_id: str
    user_id: str
    content: str
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ReviewReply:
        return cls(
            id=row["id"],
            review_id=row["review_id"],
            user_id=row["user_id"],
            content=row["content"],
            created_at=row["created_at"],
        )


@dataclass
class Image:
    """An image attached to a business. At most one per business is primary."""

    id: str
    business_id: str
    url: str
    storage_path: str | None
    type: str
    sort_order: int
    is_primary: bool
    uploaded_by: str | None
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Image:
        return cls(
            id=row["id"],
            business_id=row["business_id"],
            url=row["url"],
            storage_path=row["storage_path"],
            type=row["type"],
            sort_order=row["sort_order"],
            is_primary=bool(row["is_primary"]),
            uploaded_by=row["uploaded_by"],
            created_at=row["created_at"],
        )


@dataclass
class AggregateState:
    """Derived counters for a business or event.

    updated_at is excluded from equality so that two recomputes over the
    same rows compare equal.
    """

    target_type: str
    target_id: str
    review_count: int
    average_rating: float
    rating_distribution: dict[str, int]
    helpful_votes: int
    last_activity_at: int
    updated_at: int = field(default=0, compare=False)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> AggregateState:
        return cls(
            target_type=row["target_type"],
            target_id=row["target_id"],
            review_count=row["review_count"],
            average_rating=row["average_rating"],
            rating_distribution=json.loads(row["rating_distribution"]),
            helpful_votes=row["helpful_votes"],
            last_activity_at=row["last_activity_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class NotificationRecord:
    """A notification delivered to one recipient.

    Attributes:
        id: Notification id
        recipient_id: Identity the notification is for
        kind: One of review, business, user, highlyRated, comment_reply, badge
        title: Short title
        message: Body text
        link: In-app link the notification opens
        entity_id: Deduplication key, unique per (recipient_id, kind)
        read: Whether the recipient has read it
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    id: str
    recipient_id: str
    kind: str
    title: str
    message: str
    link: str | None
    entity_id: str | None
    read: bool
    created_at: int
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "link": self.link,
            "entity_id": self.entity_id,
            "read": self.read,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> NotificationRecord:
        return cls(
            id=row["id"],
            recipient_id=row["recipient_id"],
            kind=row["kind"],
            title=row["title"],
            message=row["message"],
            link=row["link"],
            entity_id=row["entity_id"],
            read=bool(row["read"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
