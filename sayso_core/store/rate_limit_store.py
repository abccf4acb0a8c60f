"""
Authentication rate-limit counters for Sayso Core.

The boundary layer owns the blocking policy (how many attempts, how long
a block lasts). This store only keeps the counters and the block-until
timestamp keyed by (identifier, attempt type).

Invariants:
    - One row per (identifier, attempt_type)
    - increment() is atomic; concurrent increments never lose a count
    - blocked_until is only ever set by increment() and cleared by reset()

How to change safely:
    - New attempt types need no schema change
    - cleanup() must never delete a row whose block is still active
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum

from .database import Database, now_ms

logger = logging.getLogger(__name__)


class AttemptType(Enum):
    REGISTRATION = "registration"
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"


@dataclass
class RateLimitState:
    """Counter state for one (identifier, attempt type).

    Attributes:
        identifier: Email, IP or other key chosen by the boundary layer
        attempt_type: What is being limited
        attempt_count: Attempts since the last reset
        blocked_until: Block expiry (Unix ms), None when not blocked
        last_attempt_at: Time of the latest attempt (Unix ms)
    """

    identifier: str
    attempt_type: str
    attempt_count: int
    blocked_until: int | None
    last_attempt_at: int

    def is_blocked(self, at_ms: int | None = None) -> bool:
        if self.blocked_until is None:
            return False
        return self.blocked_until > (at_ms if at_ms is not None else now_ms())


def _attempt_value(attempt_type: AttemptType | str) -> str:
    return attempt_type.value if isinstance(attempt_type, AttemptType) else attempt_type


class RateLimitStore:
    """Counter/window store behind the authentication rate limiter.

    Example:
        >>> limits = RateLimitStore(db)
        >>> state = await limits.increment(
        ...     "203.0.113.9", AttemptType.REGISTRATION, max_attempts=5, block_ms=3_600_000
        ... )
        >>> state.is_blocked()
        False
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def increment(
        self,
        identifier: str,
        attempt_type: AttemptType | str,
        max_attempts: int | None = None,
        block_ms: int = 0,
        at_ms: int | None = None,
    ) -> RateLimitState:
        """Count one attempt.

        Args:
            identifier: Key chosen by the boundary layer
            attempt_type: What is being limited
            max_attempts: Block once the count reaches this (None: never block)
            block_ms: Block duration once the threshold is reached
            at_ms: Attempt time (default: now)

        Returns:
            State after counting the attempt
        """
        attempt = _attempt_value(attempt_type)
        now = at_ms if at_ms is not None else now_ms()

        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO auth_rate_limits
                (id, identifier, attempt_type, attempt_count, blocked_until,
                 last_attempt_at, created_at, updated_at)
                VALUES (?, ?, ?, 1, NULL, ?, ?, ?)
                ON CONFLICT(identifier, attempt_type) DO UPDATE SET
                    attempt_count = attempt_count + 1,
                    last_attempt_at = excluded.last_attempt_at,
                    updated_at = excluded.updated_at
                """,
                (str(uuid.uuid4()), identifier, attempt, now, now, now),
            )
            row = conn.execute(
                "SELECT * FROM auth_rate_limits WHERE identifier = ? AND attempt_type = ?",
                (identifier, attempt),
            ).fetchone()

            blocked_until = row["blocked_until"]
            if max_attempts is not None and row["attempt_count"] >= max_attempts:
                if blocked_until is None or blocked_until <= now:
                    blocked_until = now + block_ms
                    conn.execute(
                        "UPDATE auth_rate_limits SET blocked_until = ? WHERE id = ?",
                        (blocked_until, row["id"]),
                    )
                    logger.info(
                        "Rate limit block started",
                        extra={"attempt_type": attempt, "attempt_count": row["attempt_count"]},
                    )

        return RateLimitState(
            identifier=identifier,
            attempt_type=attempt,
            attempt_count=row["attempt_count"],
            blocked_until=blocked_until,
            last_attempt_at=row["last_attempt_at"],
        )

    async def check(
        self, identifier: str, attempt_type: AttemptType | str
    ) -> RateLimitState | None:
        """Current counter state, or None if there were no attempts."""
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_rate_limits WHERE identifier = ? AND attempt_type = ?",
                (identifier, _attempt_value(attempt_type)),
            ).fetchone()
        if not row:
            return None
        return RateLimitState(
            identifier=row["identifier"],
            attempt_type=row["attempt_type"],
            attempt_count=row["attempt_count"],
            blocked_until=row["blocked_until"],
            last_attempt_at=row["last_attempt_at"],
        )

    async def reset(self, identifier: str, attempt_type: AttemptType | str) -> bool:
        """Forget the counter, e.g. after a successful login."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM auth_rate_limits WHERE identifier = ? AND attempt_type = ?",
                (identifier, _attempt_value(attempt_type)),
            )
        return cursor.rowcount > 0

    async def cleanup(self, retention_ms: int, at_ms: int | None = None) -> int:
        """Delete idle counters whose block, if any, has expired.

        Args:
            retention_ms: Counters idle for longer than this are removed
            at_ms: Reference time (default: now)

        Returns:
            Number of counters removed
        """
        now = at_ms if at_ms is not None else now_ms()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM auth_rate_limits
                WHERE last_attempt_at < ?
                  AND (blocked_until IS NULL OR blocked_until <= ?)
                """,
                (now - retention_ms, now),
            )
        if cursor.rowcount:
            logger.info("Cleaned up rate-limit counters", extra={"removed": cursor.rowcount})
        return cursor.rowcount
