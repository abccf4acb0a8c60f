"""
Derived-state engine for Sayso Core.

This module owns aggregate_state and reviews.helpful_count. Each update is
a full recompute from the stored rows, so applying the same event twice,
or applying events out of order, converges on the same state.

Reactions:
- Review created/deleted: review_count, average_rating (2 decimals),
  rating_distribution, and last_activity_at bumped to the event time
- Review updated: counters recomputed, freshness unchanged
- Business updated: last_activity_at bumped iff a meaningful field changed
- Vote created/deleted: the review's helpful_count and the parent's
  helpful_votes recomputed from vote rows
- Business/event created: aggregate row initialized at creation time
- Business deleted: aggregate row dropped
- Identity deleted: every target that lost one of its reviews and every
  review that lost one of its votes recomputed

Invariants:
    - last_activity_at never moves backwards
    - Counters are a pure function of reviews and votes at recompute time
    - Nothing else writes aggregate_state or reviews.helpful_count

How to change safely:
    - Keep every read and write of one recompute in one transaction
    - Adding a meaningful field means adding it to MEANINGFUL_BUSINESS_FIELDS
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any

from ..events import DomainEvent, EventKind
from ..store.database import Database, now_ms
from ..store.records import MEANINGFUL_BUSINESS_FIELDS, AggregateState

logger = logging.getLogger(__name__)

TARGET_TABLES = {"business": "businesses", "event": "events"}


def changed_meaningful_fields(before: dict[str, Any], after: dict[str, Any]) -> list[str]:
    """Meaningful business fields whose value differs between two snapshots."""
    return [
        name
        for name in MEANINGFUL_BUSINESS_FIELDS
        if (name in before or name in after) and before.get(name) != after.get(name)
    ]


class DerivedStateEngine:
    """Recomputes aggregate counters and freshness.

    Thread safety:
        Each recompute runs in its own BEGIN IMMEDIATE transaction, so
        concurrent recomputes for one target serialize on the write lock
        and the last one reflects every committed review.

    Example:
        >>> engine = DerivedStateEngine(db)
        >>> state = await engine.recompute_review_stats("business", "biz-1", activity_at=ts)
        >>> state.review_count, state.average_rating
        (3, 4.0)
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def get_aggregate(self, target_type: str, target_id: str) -> AggregateState | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM aggregate_state WHERE target_type = ? AND target_id = ?",
                (target_type, target_id),
            ).fetchone()
        return AggregateState.from_row(row) if row else None

    async def initialize_target(self, target_type: str, target_id: str) -> AggregateState | None:
        """Create the aggregate row for a new business or event."""
        with self.db.transaction() as conn:
            return self._recompute(conn, target_type, target_id, activity_at=None)

    async def recompute_review_stats(
        self,
        target_type: str,
        target_id: str,
        activity_at: int | None = None,
    ) -> AggregateState | None:
        """Recompute review counters for a target.

        Args:
            target_type: "business" or "event"
            target_id: Target id
            activity_at: Bump last_activity_at to this time (never backwards)

        Returns:
            The new state, or None if the target no longer exists
        """
        with self.db.transaction() as conn:
            return self._recompute(conn, target_type, target_id, activity_at)

    async def apply_business_update(
        self,
        business_id: str,
        before: dict[str, Any],
        after: dict[str, Any],
        at_ms: int,
    ) -> bool:
        """Bump freshness if a meaningful field changed.

        Returns:
            True if last_activity_at was bumped
        """
        changed = changed_meaningful_fields(before, after)
        if not changed:
            logger.debug(
                "Business update touched no meaningful field",
                extra={"business_id": business_id},
            )
            return False

        with self.db.transaction() as conn:
            state = self._recompute(conn, "business", business_id, activity_at=at_ms)

        logger.debug(
            "Business freshness bumped",
            extra={"business_id": business_id, "fields": changed},
        )
        return state is not None

    async def recompute_helpful_votes(self, review_id: str) -> int | None:
        """Recompute a review's helpful_count and its parent's total.

        Returns:
            The review's helpful_count, or None if the review no longer exists
        """
        with self.db.transaction() as conn:
            review = conn.execute(
                "SELECT target_type, target_id FROM reviews WHERE id = ?", (review_id,)
            ).fetchone()
            if not review:
                return None

            count = conn.execute(
                "SELECT COUNT(*) FROM review_helpful_votes WHERE review_id = ?", (review_id,)
            ).fetchone()[0]
            conn.execute("UPDATE reviews SET helpful_count = ? WHERE id = ?", (count, review_id))
            self._recompute(conn, review["target_type"], review["target_id"], activity_at=None)

        return count

    async def drop_target(self, target_type: str, target_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM aggregate_state WHERE target_type = ? AND target_id = ?",
                (target_type, target_id),
            )
        return cursor.rowcount > 0

    async def apply_identity_removal(
        self,
        review_targets: list[list[str]],
        voted_review_ids: list[str],
        at_ms: int,
    ) -> None:
        """Recompute everything a deleted identity's reviews and votes fed.

        Targets that lost a review get their freshness bumped like any
        review deletion; reviews that lost a vote get helpful_count and
        their parent's helpful_votes recomputed.
        """
        with self.db.transaction() as conn:
            parents = set()
            for review_id in voted_review_ids:
                review = conn.execute(
                    "SELECT target_type, target_id FROM reviews WHERE id = ?", (review_id,)
                ).fetchone()
                if not review:
                    continue
                count = conn.execute(
                    "SELECT COUNT(*) FROM review_helpful_votes WHERE review_id = ?",
                    (review_id,),
                ).fetchone()[0]
                conn.execute(
                    "UPDATE reviews SET helpful_count = ? WHERE id = ?", (count, review_id)
                )
                parents.add((review["target_type"], review["target_id"]))

            lost_reviews = {(t, i) for t, i in review_targets}
            for target_type, target_id in sorted(lost_reviews):
                self._recompute(conn, target_type, target_id, activity_at=at_ms)
            for target_type, target_id in sorted(parents - lost_reviews):
                self._recompute(conn, target_type, target_id, activity_at=None)

        logger.debug(
            "Recomputed after identity removal",
            extra={"targets": len(review_targets), "reviews": len(voted_review_ids)},
        )

    async def handle(self, event: DomainEvent) -> AggregateState | None:
        """Apply the derived-state reaction for one domain event.

        Returns:
            The aggregate state touched, if any
        """
        kind = event.kind
        payload = event.payload

        if kind in (EventKind.BUSINESS_CREATED, EventKind.EVENT_CREATED):
            return await self.initialize_target(event.resource_type, event.resource_id)

        if kind == EventKind.BUSINESS_UPDATED:
            await self.apply_business_update(
                event.resource_id,
                payload.get("before", {}),
                payload.get("after", {}),
                event.ts_ms,
            )
            return await self.get_aggregate("business", event.resource_id)

        if kind == EventKind.BUSINESS_DELETED:
            await self.drop_target("business", event.resource_id)
            return None

        if kind in (EventKind.REVIEW_CREATED, EventKind.REVIEW_DELETED):
            return await self.recompute_review_stats(
                payload["target_type"], payload["target_id"], activity_at=event.ts_ms
            )

        if kind == EventKind.REVIEW_UPDATED:
            return await self.recompute_review_stats(payload["target_type"], payload["target_id"])

        if kind in (EventKind.VOTE_CREATED, EventKind.VOTE_DELETED):
            await self.recompute_helpful_votes(payload["review_id"])
            if "target_type" in payload:
                return await self.get_aggregate(payload["target_type"], payload["target_id"])
            return None

        if kind == EventKind.IDENTITY_DELETED:
            await self.apply_identity_removal(
                payload.get("review_targets", []),
                payload.get("voted_review_ids", []),
                event.ts_ms,
            )
            return None

        return None

    def _recompute(
        self,
        conn: sqlite3.Connection,
        target_type: str,
        target_id: str,
        activity_at: int | None,
    ) -> AggregateState | None:
        table = TARGET_TABLES.get(target_type)
        if table is None:
            raise ValueError(f"Unknown aggregate target type: {target_type}")

        target = conn.execute(
            f"SELECT created_at FROM {table} WHERE id = ?", (target_id,)
        ).fetchone()
        if not target:
            conn.execute(
                "DELETE FROM aggregate_state WHERE target_type = ? AND target_id = ?",
                (target_type, target_id),
            )
            logger.debug(
                "Aggregate target is gone, dropped state",
                extra={"target_type": target_type, "target_id": target_id},
            )
            return None

        stats = conn.execute(
            """
            SELECT COUNT(*) AS review_count, ROUND(AVG(rating), 2) AS average_rating
            FROM reviews WHERE target_type = ? AND target_id = ?
            """,
            (target_type, target_id),
        ).fetchone()
        distribution = {str(rating): 0 for rating in range(1, 6)}
        for row in conn.execute(
            """
            SELECT rating, COUNT(*) AS n FROM reviews
            WHERE target_type = ? AND target_id = ? GROUP BY rating
            """,
            (target_type, target_id),
        ):
            distribution[str(row["rating"])] = row["n"]
        helpful_votes = conn.execute(
            """
            SELECT COUNT(*) FROM review_helpful_votes v
            JOIN reviews r ON r.id = v.review_id
            WHERE r.target_type = ? AND r.target_id = ?
            """,
            (target_type, target_id),
        ).fetchone()[0]

        last_activity_at = max(target["created_at"], activity_at or 0)
        conn.execute(
            """
            INSERT INTO aggregate_state
            (target_type, target_id, review_count, average_rating, rating_distribution,
             helpful_votes, last_activity_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(target_type, target_id) DO UPDATE SET
                review_count = excluded.review_count,
                average_rating = excluded.average_rating,
                rating_distribution = excluded.rating_distribution,
                helpful_votes = excluded.helpful_votes,
                last_activity_at = MAX(aggregate_state.last_activity_at,
                                       excluded.last_activity_at),
                updated_at = excluded.updated_at
            """,
            (
                target_type,
                target_id,
                stats["review_count"],
                stats["average_rating"] or 0.0,
                json.dumps(distribution, sort_keys=True),
                helpful_votes,
                last_activity_at,
                now_ms(),
            ),
        )

        row = conn.execute(
            "SELECT * FROM aggregate_state WHERE target_type = ? AND target_id = ?",
            (target_type, target_id),
        ).fetchone()
        return AggregateState.from_row(row)
