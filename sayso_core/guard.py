"""
Uniqueness guard for Sayso Core.

This module is the only writer of the two guarded invariants:
- At most one primary image per business (a singleton flag per group)
- At most one helpful vote per identity per review (pair uniqueness)

Invariants:
    - Clearing the old primary and setting the new one happen in the same
      BEGIN IMMEDIATE transaction, so no reader ever sees two primaries
    - When the primary image is deleted, the next image by
      (sort_order ASC, created_at DESC) is promoted in the same transaction
    - Of two racing set_primary_image calls the later commit wins; the
      earlier one is a superseded write, not an error
    - A duplicate vote raises ConflictError; the store's primary key is
      the final arbiter
    - Finding the structural constraint already broken raises
      InvariantViolationError and logs at CRITICAL

How to change safely:
    - Never write business_images.is_primary or review_helpful_votes
      anywhere else
    - Keep every read that decides a write inside the write transaction
"""

from __future__ import annotations

import logging
import sqlite3
import uuid

from .errors import ConflictError, InvariantViolationError, NotFoundError
from .store.database import Database, now_ms
from .store.records import Image

logger = logging.getLogger(__name__)

IMAGE_TYPES = ("cover", "logo", "gallery")


def _raise_invariant(invariant: str, error: sqlite3.IntegrityError, **details) -> None:
    logger.critical(
        "Singleton invariant violated",
        extra={"invariant": invariant, "error": str(error), **details},
    )
    raise InvariantViolationError(invariant, details) from error


class UniquenessGuard:
    """Atomic writes for singleton flags and pair-unique rows.

    Thread safety:
        Safe under concurrent writers in separate threads or processes.
        The SQLite write lock taken by BEGIN IMMEDIATE serializes writers,
        and the partial unique index rejects anything that slips past.

    Example:
        >>> guard = UniquenessGuard(db)
        >>> await guard.set_primary_image("biz-1", "img-2")
        >>> await guard.cast_vote("review-1", "user-9")
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def add_image(
        self,
        business_id: str,
        url: str,
        storage_path: str | None = None,
        image_type: str = "gallery",
        sort_order: int = 0,
        is_primary: bool = False,
        uploaded_by: str | None = None,
    ) -> Image:
        """Attach an image to a business, optionally as the new primary.

        Raises:
            NotFoundError: If the business or uploaded_by identity does not exist
            ValueError: If image_type is unknown
        """
        if image_type not in IMAGE_TYPES:
            raise ValueError(f"Unknown image type: {image_type}")

        image = Image(
            id=str(uuid.uuid4()),
            business_id=business_id,
            url=url,
            storage_path=storage_path,
            type=image_type,
            sort_order=sort_order,
            is_primary=is_primary,
            uploaded_by=uploaded_by,
            created_at=now_ms(),
        )

        with self.db.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM businesses WHERE id = ?", (business_id,)
            ).fetchone()
            if not exists:
                raise NotFoundError("business", business_id)

            if is_primary:
                conn.execute(
                    "UPDATE business_images SET is_primary = 0 "
                    "WHERE business_id = ? AND is_primary = 1",
                    (business_id,),
                )
            try:
                conn.execute(
                    """
                    INSERT INTO business_images
                    (id, business_id, url, storage_path, type, sort_order, is_primary,
                     uploaded_by, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (image.id, business_id, url, storage_path, image_type, sort_order,
                     1 if is_primary else 0, uploaded_by, image.created_at),
                )
            except sqlite3.IntegrityError as e:
                if "FOREIGN KEY" in str(e):
                    raise NotFoundError("identity", uploaded_by) from e
                _raise_invariant("one_primary_image_per_business", e, business_id=business_id)

        logger.debug(
            "Added image",
            extra={"business_id": business_id, "image_id": image.id, "is_primary": is_primary},
        )
        return image

    async def set_primary_image(self, business_id: str, image_id: str) -> Image:
        """Make image_id the only primary image of its business.

        Args:
            business_id: Business that owns the image
            image_id: Image to promote

        Returns:
            The promoted image

        Raises:
            NotFoundError: If the image does not belong to the business
            InvariantViolationError: If the flag could not be made unique
        """
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM business_images WHERE id = ? AND business_id = ?",
                (image_id, business_id),
            ).fetchone()
            if not row:
                raise NotFoundError("image", image_id)

            try:
                conn.execute(
                    "UPDATE business_images SET is_primary = 0 "
                    "WHERE business_id = ? AND is_primary = 1 AND id != ?",
                    (business_id, image_id),
                )
                conn.execute(
                    "UPDATE business_images SET is_primary = 1 WHERE id = ?",
                    (image_id,),
                )
            except sqlite3.IntegrityError as e:
                _raise_invariant("one_primary_image_per_business", e, business_id=business_id)

            primaries = conn.execute(
                "SELECT COUNT(*) FROM business_images WHERE business_id = ? AND is_primary = 1",
                (business_id,),
            ).fetchone()[0]
            if primaries != 1:
                logger.critical(
                    "Singleton invariant violated",
                    extra={"invariant": "one_primary_image_per_business", "primaries": primaries},
                )
                raise InvariantViolationError(
                    "one_primary_image_per_business",
                    {"business_id": business_id, "primaries": primaries},
                )

            row = conn.execute(
                "SELECT * FROM business_images WHERE id = ?", (image_id,)
            ).fetchone()

        logger.debug(
            "Set primary image",
            extra={"business_id": business_id, "image_id": image_id},
        )
        return Image.from_row(row)

    async def delete_image(self, image_id: str) -> tuple[Image, Image | None] | None:
        """Delete an image, promoting a successor if it was the primary.

        Returns:
            (deleted image, promoted image or None), or None if not found
        """
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM business_images WHERE id = ?", (image_id,)
            ).fetchone()
            if not row:
                return None
            deleted = Image.from_row(row)

            conn.execute("DELETE FROM business_images WHERE id = ?", (image_id,))

            promoted = None
            if deleted.is_primary:
                successor = conn.execute(
                    """
                    SELECT id FROM business_images WHERE business_id = ?
                    ORDER BY sort_order ASC, created_at DESC
                    LIMIT 1
                    """,
                    (deleted.business_id,),
                ).fetchone()
                if successor:
                    try:
                        conn.execute(
                            "UPDATE business_images SET is_primary = 1 WHERE id = ?",
                            (successor["id"],),
                        )
                    except sqlite3.IntegrityError as e:
                        _raise_invariant(
                            "one_primary_image_per_business",
                            e,
                            business_id=deleted.business_id,
                        )
                    promoted = Image.from_row(
                        conn.execute(
                            "SELECT * FROM business_images WHERE id = ?", (successor["id"],)
                        ).fetchone()
                    )

        if promoted:
            logger.info(
                "Promoted image after primary was deleted",
                extra={"business_id": deleted.business_id, "image_id": promoted.id},
            )
        return deleted, promoted

    async def get_primary_image(self, business_id: str) -> Image | None:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM business_images WHERE business_id = ? AND is_primary = 1",
                (business_id,),
            ).fetchall()
        if len(rows) > 1:
            logger.critical(
                "Singleton invariant violated",
                extra={"invariant": "one_primary_image_per_business", "primaries": len(rows)},
            )
            raise InvariantViolationError(
                "one_primary_image_per_business",
                {"business_id": business_id, "primaries": len(rows)},
            )
        return Image.from_row(rows[0]) if rows else None

    async def cast_vote(self, review_id: str, user_id: str) -> None:
        """Record a helpful vote.

        Raises:
            ConflictError: If user_id already voted on review_id
            NotFoundError: If the review or the voter does not exist
        """
        with self.db.transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO review_helpful_votes (review_id, user_id, created_at) "
                    "VALUES (?, ?, ?)",
                    (review_id, user_id, now_ms()),
                )
            except sqlite3.IntegrityError as e:
                if "UNIQUE" in str(e) or "PRIMARY KEY" in str(e):
                    raise ConflictError(
                        "Already voted", constraint="one_vote_per_user_per_review"
                    ) from e
                review = conn.execute(
                    "SELECT 1 FROM reviews WHERE id = ?", (review_id,)
                ).fetchone()
                if review is None:
                    raise NotFoundError("review", review_id) from e
                raise NotFoundError("identity", user_id) from e

    async def remove_vote(self, review_id: str, user_id: str) -> bool:
        """Withdraw a helpful vote.

        Returns:
            True if a vote was removed
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM review_helpful_votes WHERE review_id = ? AND user_id = ?",
                (review_id, user_id),
            )
        return cursor.rowcount > 0
