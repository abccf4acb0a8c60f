"""
Platform SQLite store for Sayso Core.

This module manages the primary content rows of the platform:
- Identities and profiles
- Businesses and their team members
- Events, including rows upserted by the ingestion collaborator
- Reviews and review replies
- Badges, profile views and CTA clicks
- Read access to images and votes (writes go through the uniqueness guard)
- Resource descriptors for the authorization layer

Invariants:
    - All write operations are atomic (single BEGIN IMMEDIATE transaction)
    - Deleting a business removes the reviews that target it in the same
      transaction; the schema cascades everything else
    - Ingested events are unique per (source, external_id)
    - This store never writes aggregate_state, notifications,
      business_images.is_primary or review_helpful_votes

How to change safely:
    - Column whitelists (EDITABLE_BUSINESS_FIELDS, REVIEW_EDITABLE_FIELDS)
      are what keep dynamic UPDATE statements safe; extend them, never
      interpolate caller-supplied names
    - New resource types need a branch in load_resource
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any

from ..authz.resources import GUEST_REVIEW_TARGETS, Resource, ResourceType
from ..errors import NotFoundError, ValidationError
from .database import Database, now_ms
from .records import (
    EDITABLE_BUSINESS_FIELDS,
    Business,
    Event,
    Identity,
    IdentityRemoval,
    Image,
    Profile,
    Review,
    ReviewReply,
    TeamMember,
)

logger = logging.getLogger(__name__)

REVIEW_EDITABLE_FIELDS = ("rating", "title", "content")


def _to_column(name: str, value: Any) -> Any:
    if name in ("verified", "is_hidden", "is_system"):
        return 1 if value else 0
    return value


def _check_business_name(name: Any) -> None:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Business name is required", field_name="name")


class PlatformStore:
    """Store for identities, businesses, events, reviews and activity rows.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = PlatformStore(db)
        >>> owner = await store.create_identity("owner@example.com")
        >>> business = await store.create_business(owner.id, "Corner Cafe")
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ── Identities and profiles ──────────────────────────────────────

    async def create_identity(
        self,
        email: str,
        role: str = "user",
        display_name: str | None = None,
        identity_id: str | None = None,
        created_at: int | None = None,
    ) -> Identity:
        """Register an identity issued by the auth provider."""
        identity = Identity(
            id=identity_id or str(uuid.uuid4()),
            email=email,
            role=role,
            display_name=display_name,
            created_at=created_at or now_ms(),
        )
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO identities (id, email, role, display_name, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (identity.id, identity.email, identity.role, identity.display_name,
                 identity.created_at),
            )
        return identity

    async def get_identity(self, identity_id: str) -> Identity | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM identities WHERE id = ?", (identity_id,)).fetchone()
        return Identity.from_row(row) if row else None

    async def set_role(self, identity_id: str, role: str) -> Identity | None:
        """Change an identity's platform role.

        Returns:
            Updated Identity, or None if it does not exist
        """
        if role not in ("user", "admin"):
            raise ValidationError(f"Unknown role: {role}", field_name="role")
        with self.db.transaction() as conn:
            conn.execute("UPDATE identities SET role = ? WHERE id = ?", (role, identity_id))
            row = conn.execute("SELECT * FROM identities WHERE id = ?", (identity_id,)).fetchone()
        return Identity.from_row(row) if row else None

    async def delete_identity(self, identity_id: str) -> IdentityRemoval | None:
        """Remove an identity; owned rows cascade, audit references go NULL.

        The reviews and votes the cascade removes are read in the same
        transaction, so the caller can recompute what depended on them.

        Returns:
            IdentityRemoval, or None if the identity did not exist
        """
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM identities WHERE id = ?", (identity_id,)).fetchone()
            if not row:
                return None
            targets = conn.execute(
                "SELECT DISTINCT target_type, target_id FROM reviews WHERE user_id = ? "
                "ORDER BY target_type, target_id",
                (identity_id,),
            ).fetchall()
            votes = conn.execute(
                """
                SELECT v.review_id FROM review_helpful_votes v
                JOIN reviews r ON r.id = v.review_id
                WHERE v.user_id = ? AND (r.user_id IS NULL OR r.user_id != ?)
                ORDER BY v.review_id
                """,
                (identity_id, identity_id),
            ).fetchall()
            conn.execute("DELETE FROM identities WHERE id = ?", (identity_id,))

        removal = IdentityRemoval(
            identity=Identity.from_row(row),
            review_targets=[(t["target_type"], t["target_id"]) for t in targets],
            voted_review_ids=[v["review_id"] for v in votes],
        )
        logger.info(
            "Deleted identity",
            extra={
                "identity_id": identity_id,
                "review_targets": len(removal.review_targets),
                "votes": len(removal.voted_review_ids),
            },
        )
        return removal

    async def upsert_profile(
        self,
        user_id: str,
        display_name: str | None = None,
        username: str | None = None,
        email: str | None = None,
        account_type: str | None = None,
    ) -> Profile:
        now = now_ms()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO profiles (user_id, display_name, username, email, account_type,
                                      created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    username = excluded.username,
                    email = excluded.email,
                    account_type = excluded.account_type,
                    updated_at = excluded.updated_at
                """,
                (user_id, display_name, username, email, account_type, now, now),
            )
            row = conn.execute("SELECT * FROM profiles WHERE user_id = ?", (user_id,)).fetchone()
        return Profile.from_row(row)

    async def get_profile(self, user_id: str) -> Profile | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM profiles WHERE user_id = ?", (user_id,)).fetchone()
        return Profile.from_row(row) if row else None

    # ── Businesses and teams ─────────────────────────────────────────

    async def create_business(
        self,
        owner_id: str | None,
        name: str,
        fields: dict[str, Any] | None = None,
        created_by: str | None = None,
        business_id: str | None = None,
        created_at: int | None = None,
    ) -> Business:
        """Create a business listing.

        Args:
            owner_id: Direct owner, None for an unclaimed listing
            name: Display name
            fields: Other editable columns (description, phone, ...)
            created_by: Identity that created the row
            business_id: Optional specific id (generated if not provided)
            created_at: Optional creation timestamp

        Raises:
            ValidationError: If name is empty or fields names a non-editable column
            NotFoundError: If owner_id or created_by is not a known identity
        """
        _check_business_name(name)
        fields = dict(fields or {})
        unknown = set(fields) - set(EDITABLE_BUSINESS_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown business fields: {sorted(unknown)}")

        business_id = business_id or str(uuid.uuid4())
        now = created_at or now_ms()
        columns = ["id", "owner_id", "name", "created_by", "created_at", "updated_at"]
        values: list[Any] = [business_id, owner_id, name, created_by, now, now]
        for column, value in fields.items():
            columns.append(column)
            values.append(_to_column(column, value))

        with self.db.transaction() as conn:
            try:
                conn.execute(
                    f"INSERT INTO businesses ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    values,
                )
            except sqlite3.IntegrityError as e:
                if "FOREIGN KEY" in str(e):
                    raise NotFoundError("identity", owner_id or created_by) from e
                raise ValidationError(f"Invalid business fields: {e}") from e
            row = conn.execute("SELECT * FROM businesses WHERE id = ?", (business_id,)).fetchone()

        logger.debug("Created business", extra={"business_id": business_id, "owner_id": owner_id})
        return Business.from_row(row)

    async def get_business(self, business_id: str) -> Business | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM businesses WHERE id = ?", (business_id,)).fetchone()
        return Business.from_row(row) if row else None

    async def update_business(
        self,
        business_id: str,
        changes: dict[str, Any],
        updated_at: int | None = None,
    ) -> tuple[Business, Business] | None:
        """Apply a partial update to a business.

        Returns:
            (before, after) snapshots, or None if the business does not exist

        Raises:
            ValidationError: If changes names a non-editable column or clears the name
        """
        unknown = set(changes) - set(EDITABLE_BUSINESS_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown business fields: {sorted(unknown)}")
        if "name" in changes:
            _check_business_name(changes["name"])

        now = updated_at or now_ms()
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM businesses WHERE id = ?", (business_id,)).fetchone()
            if not row:
                return None
            before = Business.from_row(row)

            if changes:
                assignments = ", ".join(f"{column} = ?" for column in changes)
                try:
                    conn.execute(
                        f"UPDATE businesses SET {assignments}, updated_at = ? WHERE id = ?",
                        [_to_column(c, v) for c, v in changes.items()] + [now, business_id],
                    )
                except sqlite3.IntegrityError as e:
                    raise ValidationError(f"Invalid business fields: {e}") from e
            row = conn.execute("SELECT * FROM businesses WHERE id = ?", (business_id,)).fetchone()

        return before, Business.from_row(row)

    async def delete_business(self, business_id: str) -> Business | None:
        """Delete a business and the reviews that target it.

        Returns:
            The deleted Business, or None if it did not exist
        """
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM businesses WHERE id = ?", (business_id,)).fetchone()
            if not row:
                return None
            conn.execute(
                "DELETE FROM reviews WHERE target_type = 'business' AND target_id = ?",
                (business_id,),
            )
            conn.execute("DELETE FROM businesses WHERE id = ?", (business_id,))
        return Business.from_row(row)

    async def add_team_member(
        self, business_id: str, user_id: str, role: str = "manager"
    ) -> TeamMember:
        """Add a team member, or change the role of an existing one."""
        now = now_ms()
        with self.db.transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO business_team_members (business_id, user_id, role, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(business_id, user_id) DO UPDATE SET role = excluded.role
                    """,
                    (business_id, user_id, role, now),
                )
            except sqlite3.IntegrityError as e:
                if "FOREIGN KEY" in str(e):
                    raise NotFoundError("identity", user_id) from e
                raise ValidationError(f"Invalid team role: {role}", field_name="role") from e
            row = conn.execute(
                "SELECT * FROM business_team_members WHERE business_id = ? AND user_id = ?",
                (business_id, user_id),
            ).fetchone()
        return TeamMember.from_row(row)

    async def remove_team_member(self, business_id: str, user_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM business_team_members WHERE business_id = ? AND user_id = ?",
                (business_id, user_id),
            )
        return cursor.rowcount > 0

    async def is_team_member(self, business_id: str, user_id: str) -> bool:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM business_team_members WHERE business_id = ? AND user_id = ?",
                (business_id, user_id),
            ).fetchone()
        return row is not None

    async def list_team_members(self, business_id: str) -> list[TeamMember]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM business_team_members WHERE business_id = ? ORDER BY created_at",
                (business_id,),
            ).fetchall()
        return [TeamMember.from_row(row) for row in rows]

    # ── Events ───────────────────────────────────────────────────────

    async def create_event(
        self,
        owner_id: str | None,
        title: str,
        description: str | None = None,
        starts_at: int | None = None,
        created_by: str | None = None,
        event_id: str | None = None,
        created_at: int | None = None,
    ) -> Event:
        event_id = event_id or str(uuid.uuid4())
        now = created_at or now_ms()
        with self.db.transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO events (id, title, description, starts_at, owner_id,
                                        created_by, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (event_id, title, description, starts_at, owner_id, created_by, now, now),
                )
            except sqlite3.IntegrityError as e:
                raise NotFoundError("identity", owner_id or created_by) from e
            row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return Event.from_row(row)

    async def get_event(self, event_id: str) -> Event | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return Event.from_row(row) if row else None

    async def upsert_ingested_events(
        self, rows: list[dict[str, Any]], source: str
    ) -> list[tuple[Event, bool]]:
        """Upsert events delivered by an ingestion provider.

        Each row needs external_id and title; description and starts_at are
        optional. Re-delivering a row updates it in place.

        Args:
            rows: Provider rows
            source: Provider name, part of the natural key

        Returns:
            (event, created) for every row, in input order

        Raises:
            ValidationError: If a row lacks external_id or title
        """
        for index, row in enumerate(rows):
            if not row.get("external_id") or not row.get("title"):
                raise ValidationError(
                    f"Ingested row {index} needs external_id and title", field_name="external_id"
                )

        results: list[tuple[Event, bool]] = []
        now = now_ms()
        with self.db.transaction() as conn:
            for row in rows:
                external_id = str(row["external_id"])
                existing = conn.execute(
                    "SELECT id FROM events WHERE source = ? AND external_id = ?",
                    (source, external_id),
                ).fetchone()
                if existing:
                    conn.execute(
                        """
                        UPDATE events SET title = ?, description = ?, starts_at = ?,
                                          updated_at = ?
                        WHERE id = ?
                        """,
                        (row["title"], row.get("description"), row.get("starts_at"), now,
                         existing["id"]),
                    )
                    event_id = existing["id"]
                else:
                    event_id = str(uuid.uuid4())
                    conn.execute(
                        """
                        INSERT INTO events (id, title, description, starts_at, is_system,
                                            source, external_id, created_at, updated_at)
                        VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)
                        """,
                        (event_id, row["title"], row.get("description"), row.get("starts_at"),
                         source, external_id, now, now),
                    )
                stored = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
                results.append((Event.from_row(stored), existing is None))

        logger.info(
            "Ingested events",
            extra={
                "source": source,
                "rows": len(rows),
                "created": sum(1 for _, created in results if created),
            },
        )
        return results

    # ── Reviews and replies ──────────────────────────────────────────

    async def create_review(
        self,
        target_type: str,
        target_id: str,
        user_id: str | None,
        rating: int,
        content: str,
        title: str | None = None,
        guest_name: str | None = None,
        guest_email: str | None = None,
        guest_ip: str | None = None,
        review_id: str | None = None,
        created_at: int | None = None,
    ) -> Review:
        """Insert a review.

        Raises:
            ValidationError: If rating is outside 1..5 or a guest review has no name
        """
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5", field_name="rating")
        if user_id is None and not guest_name:
            raise ValidationError("Guest reviews need a guest name", field_name="guest_name")

        review = Review(
            id=review_id or str(uuid.uuid4()),
            target_type=target_type,
            target_id=target_id,
            user_id=user_id,
            rating=rating,
            content=content,
            title=title,
            guest_name=guest_name if user_id is None else None,
            guest_email=guest_email if user_id is None else None,
            guest_ip=guest_ip if user_id is None else None,
            created_at=created_at or now_ms(),
        )
        review.updated_at = review.created_at

        with self.db.transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO reviews (id, target_type, target_id, user_id, guest_name,
                                         guest_email, guest_ip, rating, title, content,
                                         helpful_count, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (review.id, review.target_type, review.target_id, review.user_id,
                     review.guest_name, review.guest_email, review.guest_ip, review.rating,
                     review.title, review.content, review.created_at, review.updated_at),
                )
            except sqlite3.IntegrityError as e:
                raise NotFoundError("identity", user_id) from e
        return review

    async def get_review(self, review_id: str) -> Review | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM reviews WHERE id = ?", (review_id,)).fetchone()
        return Review.from_row(row) if row else None

    async def list_reviews(self, target_type: str, target_id: str) -> list[Review]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM reviews WHERE target_type = ? AND target_id = ?
                ORDER BY created_at DESC
                """,
                (target_type, target_id),
            ).fetchall()
        return [Review.from_row(row) for row in rows]

    async def update_review(
        self, review_id: str, changes: dict[str, Any], updated_at: int | None = None
    ) -> tuple[Review, Review] | None:
        """Apply a partial update to a review's own text and rating.

        Returns:
            (before, after), or None if the review does not exist
        """
        unknown = set(changes) - set(REVIEW_EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown review fields: {sorted(unknown)}")
        if "rating" in changes and not 1 <= changes["rating"] <= 5:
            raise ValidationError("Rating must be between 1 and 5", field_name="rating")

        now = updated_at or now_ms()
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM reviews WHERE id = ?", (review_id,)).fetchone()
            if not row:
                return None
            before = Review.from_row(row)
            if changes:
                assignments = ", ".join(f"{column} = ?" for column in changes)
                conn.execute(
                    f"UPDATE reviews SET {assignments}, updated_at = ? WHERE id = ?",
                    list(changes.values()) + [now, review_id],
                )
            row = conn.execute("SELECT * FROM reviews WHERE id = ?", (review_id,)).fetchone()
        return before, Review.from_row(row)

    async def delete_review(self, review_id: str) -> Review | None:
        """Hard-delete a review; its replies and votes cascade.

        Returns:
            The deleted Review, or None if it did not exist
        """
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM reviews WHERE id = ?", (review_id,)).fetchone()
            if not row:
                return None
            conn.execute("DELETE FROM reviews WHERE id = ?", (review_id,))
        return Review.from_row(row)

    async def create_reply(self, review_id: str, user_id: str, content: str) -> ReviewReply:
        reply = ReviewReply(
            id=str(uuid.uuid4()),
            review_id=review_id,
            user_id=user_id,
            content=content,
            created_at=now_ms(),
        )
        with self.db.transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO review_replies (id, review_id, user_id, content, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (reply.id, reply.review_id, reply.user_id, reply.content, reply.created_at),
                )
            except sqlite3.IntegrityError as e:
                raise NotFoundError("review", review_id) from e
        return reply

    async def get_reply(self, reply_id: str) -> ReviewReply | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM review_replies WHERE id = ?", (reply_id,)).fetchone()
        return ReviewReply.from_row(row) if row else None

    # ── Images and votes (read side) ─────────────────────────────────

    async def get_image(self, image_id: str) -> Image | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM business_images WHERE id = ?", (image_id,)).fetchone()
        return Image.from_row(row) if row else None

    async def list_images(self, business_id: str) -> list[Image]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM business_images WHERE business_id = ?
                ORDER BY sort_order ASC, created_at DESC
                """,
                (business_id,),
            ).fetchall()
        return [Image.from_row(row) for row in rows]

    async def has_vote(self, review_id: str, user_id: str) -> bool:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM review_helpful_votes WHERE review_id = ? AND user_id = ?",
                (review_id, user_id),
            ).fetchone()
        return row is not None

    # ── Badges and activity ──────────────────────────────────────────

    async def award_badge(self, user_id: str, badge_id: str, badge_name: str) -> bool:
        """Record a badge award.

        Returns:
            True if newly awarded, False if the user already had it
        """
        with self.db.transaction() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO user_badges (user_id, badge_id, badge_name, awarded_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (user_id, badge_id, badge_name, now_ms()),
                )
            except sqlite3.IntegrityError as e:
                raise NotFoundError("identity", user_id) from e
        return cursor.rowcount > 0

    async def record_profile_view(self, business_id: str, viewer_id: str | None) -> int:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO profile_views (business_id, viewer_id, created_at) VALUES (?, ?, ?)",
                (business_id, viewer_id, now_ms()),
            )
        return cursor.lastrowid

    async def record_cta_click(self, business_id: str, user_id: str | None, cta_type: str) -> int:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO cta_clicks (business_id, user_id, cta_type, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (business_id, user_id, cta_type, now_ms()),
            )
        return cursor.lastrowid

    async def get_activity_counts(self, business_id: str) -> dict[str, Any]:
        """Profile-view total and CTA clicks grouped by type."""
        with self.db.connect() as conn:
            views = conn.execute(
                "SELECT COUNT(*) FROM profile_views WHERE business_id = ?", (business_id,)
            ).fetchone()[0]
            clicks = conn.execute(
                """
                SELECT cta_type, COUNT(*) AS n FROM cta_clicks WHERE business_id = ?
                GROUP BY cta_type
                """,
                (business_id,),
            ).fetchall()
        return {"profile_views": views, "cta_clicks": {row["cta_type"]: row["n"] for row in clicks}}

    # ── Authorization descriptors ────────────────────────────────────

    async def load_resource(self, resource_type: ResourceType, resource_id: str) -> Resource | None:
        """Build the authorization view of an existing resource.

        Votes and team members are addressed as "<parent_id>:<user_id>".
        Profile views and CTA clicks are addressed by their business id.

        Returns:
            Resource, or None if it does not exist
        """
        with self.db.connect() as conn:
            if resource_type in (
                ResourceType.BUSINESS,
                ResourceType.PROFILE_VIEW,
                ResourceType.CTA_CLICK,
            ):
                row = conn.execute(
                    "SELECT id, owner_id, is_hidden, is_system FROM businesses WHERE id = ?",
                    (resource_id,),
                ).fetchone()
                if not row:
                    return None
                return Resource(
                    type=resource_type,
                    id=row["id"],
                    owner_id=row["owner_id"],
                    business_id=row["id"],
                    is_hidden=bool(row["is_hidden"]),
                    is_system=bool(row["is_system"]),
                )

            if resource_type == ResourceType.EVENT:
                row = conn.execute(
                    "SELECT id, owner_id, is_hidden, is_system FROM events WHERE id = ?",
                    (resource_id,),
                ).fetchone()
                if not row:
                    return None
                return Resource(
                    type=resource_type,
                    id=row["id"],
                    owner_id=row["owner_id"],
                    is_hidden=bool(row["is_hidden"]),
                    is_system=bool(row["is_system"]),
                    guest_allowed=ResourceType.EVENT in GUEST_REVIEW_TARGETS,
                )

            if resource_type == ResourceType.REVIEW:
                row = conn.execute(
                    "SELECT id, user_id FROM reviews WHERE id = ?", (resource_id,)
                ).fetchone()
                if not row:
                    return None
                return Resource(type=resource_type, id=row["id"], author_id=row["user_id"])

            if resource_type == ResourceType.REPLY:
                row = conn.execute(
                    "SELECT id, user_id FROM review_replies WHERE id = ?", (resource_id,)
                ).fetchone()
                if not row:
                    return None
                return Resource(type=resource_type, id=row["id"], author_id=row["user_id"])

            if resource_type == ResourceType.IMAGE:
                row = conn.execute(
                    """
                    SELECT i.id, b.id AS business_id, b.owner_id
                    FROM business_images i JOIN businesses b ON b.id = i.business_id
                    WHERE i.id = ?
                    """,
                    (resource_id,),
                ).fetchone()
                if not row:
                    return None
                return Resource(
                    type=resource_type,
                    id=row["id"],
                    owner_id=row["owner_id"],
                    business_id=row["business_id"],
                )

            if resource_type == ResourceType.VOTE:
                review_id, _, user_id = resource_id.partition(":")
                row = conn.execute(
                    "SELECT 1 FROM review_helpful_votes WHERE review_id = ? AND user_id = ?",
                    (review_id, user_id),
                ).fetchone()
                if not row:
                    return None
                return Resource(type=resource_type, id=resource_id, author_id=user_id)

            if resource_type == ResourceType.TEAM_MEMBER:
                business_id, _, user_id = resource_id.partition(":")
                row = conn.execute(
                    """
                    SELECT b.owner_id FROM business_team_members t
                    JOIN businesses b ON b.id = t.business_id
                    WHERE t.business_id = ? AND t.user_id = ?
                    """,
                    (business_id, user_id),
                ).fetchone()
                if not row:
                    return None
                return Resource(
                    type=resource_type,
                    id=resource_id,
                    owner_id=row["owner_id"],
                    business_id=business_id,
                    author_id=user_id,
                )

            if resource_type == ResourceType.NOTIFICATION:
                row = conn.execute(
                    "SELECT id, recipient_id FROM notifications WHERE id = ?", (resource_id,)
                ).fetchone()
                if not row:
                    return None
                return Resource(type=resource_type, id=row["id"], author_id=row["recipient_id"])

            if resource_type == ResourceType.IDENTITY:
                row = conn.execute(
                    "SELECT id FROM identities WHERE id = ?", (resource_id,)
                ).fetchone()
                if not row:
                    return None
                return Resource(type=resource_type, id=row["id"], author_id=row["id"])

        raise ValueError(f"Resource type {resource_type.value} cannot be loaded by id")

