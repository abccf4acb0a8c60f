"""
Per-recipient notification store for Sayso Core.

Notifications are rows in the shared database keyed by recipient. Only the
notification fan-out adds rows; recipients read, mark read and delete
their own rows through the service layer.

Invariants:
    - At most one row per (recipient_id, kind, entity_id) when entity_id is set
    - add() on an existing key returns the existing row and writes nothing
    - Every read or state change is scoped to one recipient

How to change safely:
    - New kinds must also be added to the CHECK constraint in schema.py
    - Keep entity_id formats stable; they are the deduplication key
"""

from __future__ import annotations

import logging
import sqlite3
import uuid

from ..errors import NotFoundError
from .database import Database, now_ms
from .records import NotificationRecord

logger = logging.getLogger(__name__)

NOTIFICATION_KINDS = frozenset(
    {"review", "business", "user", "highlyRated", "comment_reply", "badge"}
)


class NotificationStore:
    """Notification rows with duplicate suppression.

    Thread safety:
        Each database connection is created per-operation. Concurrent add()
        calls for the same key race on the unique index; the loser reads
        back the winner's row.

    Example:
        >>> store = NotificationStore(db)
        >>> record, created = await store.add(
        ...     recipient_id="u1",
        ...     kind="comment_reply",
        ...     title="New reply",
        ...     message="Sam replied to your review",
        ...     entity_id="reply:r1:author",
        ... )
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def add(
        self,
        recipient_id: str,
        kind: str,
        title: str,
        message: str,
        link: str | None = None,
        entity_id: str | None = None,
        created_at: int | None = None,
    ) -> tuple[NotificationRecord, bool]:
        """Add a notification unless the same one already exists.

        Args:
            recipient_id: Identity to notify
            kind: Notification kind
            title: Short title
            message: Body text
            link: In-app link
            entity_id: Deduplication key
            created_at: Timestamp (default: now)

        Returns:
            (record, created) where created is False for a duplicate

        Raises:
            ValueError: If kind is unknown
            NotFoundError: If the recipient does not exist
        """
        if kind not in NOTIFICATION_KINDS:
            raise ValueError(f"Unknown notification kind: {kind}")

        notification_id = str(uuid.uuid4())
        now = created_at or now_ms()

        with self.db.transaction() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO notifications
                    (id, recipient_id, kind, title, message, link, entity_id, read,
                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (notification_id, recipient_id, kind, title, message, link, entity_id,
                     now, now),
                )
            except sqlite3.IntegrityError as e:
                raise NotFoundError("identity", recipient_id) from e
            created = cursor.rowcount > 0

            if created:
                row = conn.execute(
                    "SELECT * FROM notifications WHERE id = ?", (notification_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT * FROM notifications
                    WHERE recipient_id = ? AND kind = ? AND entity_id = ?
                    """,
                    (recipient_id, kind, entity_id),
                ).fetchone()

        if created:
            logger.debug(
                "Added notification",
                extra={"recipient_id": recipient_id, "kind": kind, "entity_id": entity_id},
            )
        else:
            logger.debug(
                "Suppressed duplicate notification",
                extra={"recipient_id": recipient_id, "kind": kind, "entity_id": entity_id},
            )
        return NotificationRecord.from_row(row), created

    async def get(self, recipient_id: str, notification_id: str) -> NotificationRecord | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM notifications WHERE id = ? AND recipient_id = ?",
                (notification_id, recipient_id),
            ).fetchone()
        return NotificationRecord.from_row(row) if row else None

    async def list_for(
        self,
        recipient_id: str,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationRecord]:
        """List a recipient's notifications, newest first.

        Args:
            recipient_id: Recipient identity
            unread_only: Only return unread rows
            limit: Maximum rows to return
            offset: Rows to skip
        """
        query = "SELECT * FROM notifications WHERE recipient_id = ?"
        params: list = [recipient_id]
        if unread_only:
            query += " AND read = 0"
        query += " ORDER BY created_at DESC, id LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [NotificationRecord.from_row(row) for row in rows]

    async def list_by_entity(self, entity_id: str) -> list[NotificationRecord]:
        """Every notification carrying a deduplication key, across recipients."""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE entity_id = ? ORDER BY created_at",
                (entity_id,),
            ).fetchall()
        return [NotificationRecord.from_row(row) for row in rows]

    async def mark_read(self, recipient_id: str, notification_ids: list[str]) -> int:
        """Mark notifications read. Ids belonging to other recipients are ignored.

        Returns:
            Number of rows updated
        """
        if not notification_ids:
            return 0

        placeholders = ",".join("?" * len(notification_ids))
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE notifications SET read = 1, updated_at = ?
                WHERE recipient_id = ? AND read = 0 AND id IN ({placeholders})
                """,
                [now_ms(), recipient_id, *notification_ids],
            )
        return cursor.rowcount

    async def mark_all_read(self, recipient_id: str) -> int:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET read = 1, updated_at = ? WHERE recipient_id = ? AND read = 0",
                (now_ms(), recipient_id),
            )
        return cursor.rowcount

    async def delete(self, recipient_id: str, notification_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM notifications WHERE id = ? AND recipient_id = ?",
                (notification_id, recipient_id),
            )
        return cursor.rowcount > 0

    async def get_unread_count(self, recipient_id: str) -> int:
        with self.db.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE recipient_id = ? AND read = 0",
                (recipient_id,),
            ).fetchone()[0]
