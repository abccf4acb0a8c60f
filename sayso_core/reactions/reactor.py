"""
Reactor for Sayso Core.

The Reactor runs the reactions to committed mutations: first the
derived-state engine, then the notification fan-out. It is fed either
inline by the service right after commit, or from the event bus by a
worker. It ensures:
- Each (event, handler) pair takes effect at most once, via the
  applied_reactions ledger
- Transient store errors are retried with linear backoff
- Failures are logged and recorded in failed_reactions for a later
  pass by any process, never raised to the mutation's caller

Invariants:
    - The ledger entry for a handler is written only after it succeeded
    - Derived state runs before fan-out, so the highly-rated check sees
      the new average
    - A failed handler does not stop the other handler from running
    - Bus positions are committed after handling, success or not; a
      failed event is in failed_reactions before its position is committed
    - retry_failed() replays from failed_reactions, so a restarted worker
      or a different process finishes what an earlier one left

How to change safely:
    - Handlers must stay idempotent; the ledger is per handler, not per event
    - Test with duplicate event injection
    - Monitor failed_count in production
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..bus.base import BusPosition, BusRecord, EventBus
from ..config import ReactorConfig
from ..errors import TransientError
from ..events import DomainEvent
from ..store.database import Database, now_ms
from .derived_state import DerivedStateEngine
from .fanout import FanoutResult, NotificationFanout

logger = logging.getLogger(__name__)

DERIVED_STATE = "derived_state"
FANOUT = "fanout"


@dataclass
class ReactionResult:
    """Result of reacting to one domain event.

    Attributes:
        event: The domain event
        success: Whether every handler succeeded or had already run
        handlers_run: Handlers that ran this time
        handlers_skipped: Handlers found in the ledger
        fanout: Notifications produced, if the fan-out ran
        error: Error message if a handler failed
    """

    event: DomainEvent
    success: bool = True
    handlers_run: list[str] = field(default_factory=list)
    handlers_skipped: list[str] = field(default_factory=list)
    fanout: FanoutResult | None = None
    error: str | None = None

    @property
    def skipped(self) -> bool:
        return not self.handlers_run and bool(self.handlers_skipped)


class Reactor:
    """Applies derived-state and notification reactions to domain events.

    Thread safety:
        Designed to run as a single task per process. Several processes
        may consume the same group; the ledger keeps them from applying a
        handler twice.

    Example:
        >>> reactor = Reactor(db, engine, fanout, bus=bus)
        >>> await reactor.handle(event)   # inline
        >>> await reactor.start()         # queue consumer, runs until stopped
    """

    def __init__(
        self,
        db: Database,
        engine: DerivedStateEngine,
        fanout: NotificationFanout,
        bus: EventBus | None = None,
        topic: str = "sayso-domain-events",
        group_id: str = "sayso-reactor",
        config: ReactorConfig | None = None,
    ) -> None:
        self.db = db
        self.engine = engine
        self.fanout = fanout
        self.bus = bus
        self.topic = topic
        self.group_id = group_id
        self.config = config or ReactorConfig()

        self._running = False
        self._processed_count = 0
        self._skipped_count = 0
        self._failed_count = 0
        self._last_position: BusPosition | None = None

    async def start(self) -> None:
        """Consume the bus until stop() is called.

        Raises:
            RuntimeError: If no bus was configured
        """
        if self.bus is None:
            raise RuntimeError("Reactor has no event bus to consume")
        if self._running:
            logger.warning("Reactor already running")
            return

        self._running = True
        logger.info("Starting reactor", extra={"topic": self.topic, "group_id": self.group_id})

        try:
            async for record in self.bus.subscribe(self.topic, self.group_id):
                if not self._running:
                    break

                await self._process_record(record)

                await self.bus.commit(record)
                self._last_position = record.position

        except asyncio.CancelledError:
            logger.info("Reactor cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        logger.info("Stopping reactor")

    async def handle(self, event: DomainEvent) -> ReactionResult:
        """React to one committed event.

        Never raises; failures are reported in the result and recorded in
        failed_reactions for retry_failed().
        """
        result = ReactionResult(event=event)

        await self._run_handler(result, DERIVED_STATE, lambda: self.engine.handle(event))
        fanout_result = await self._run_handler(result, FANOUT, lambda: self.fanout.handle(event))
        if isinstance(fanout_result, FanoutResult):
            result.fanout = fanout_result

        if result.success:
            await self._forget_failure(event.event_id)
            if result.skipped:
                self._skipped_count += 1
                logger.debug(
                    "Skipped already-applied event",
                    extra={"event_id": event.event_id, "kind": event.kind.value},
                )
            else:
                self._processed_count += 1
        else:
            self._failed_count += 1
            logger.error(
                "Reaction failed",
                extra={
                    "event_id": event.event_id,
                    "kind": event.kind.value,
                    "error": result.error,
                },
            )
            await self._remember_failure(event, result.error)
        return result

    async def retry_failed(self, limit: int = 100) -> list[ReactionResult]:
        """Replay events whose reaction previously failed, oldest first.

        Reads failed_reactions, so it also finishes failures recorded by
        other processes or before a restart.
        """
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT event_id, event_json FROM failed_reactions "
                "ORDER BY updated_at LIMIT ?",
                (limit,),
            ).fetchall()

        results = []
        for row in rows:
            try:
                event = DomainEvent.from_dict(json.loads(row["event_json"]))
            except ValueError as e:
                logger.error(
                    f"Cannot decode failed reaction: {e}", extra={"event_id": row["event_id"]}
                )
                continue
            results.append(await self.handle(event))
        return results

    async def pending_failures(self) -> int:
        """Number of events waiting in failed_reactions."""
        with self.db.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM failed_reactions").fetchone()[0]

    async def _remember_failure(self, event: DomainEvent, error: str | None) -> None:
        now = now_ms()
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO failed_reactions
                    (event_id, kind, event_json, attempts, last_error, first_failed_at, updated_at)
                    VALUES (?, ?, ?, 1, ?, ?, ?)
                    ON CONFLICT(event_id) DO UPDATE SET
                        attempts = failed_reactions.attempts + 1,
                        last_error = excluded.last_error,
                        updated_at = excluded.updated_at
                    """,
                    (event.event_id, event.kind.value, json.dumps(event.to_dict()), error, now, now),
                )
        except (TransientError, sqlite3.Error) as e:
            logger.critical(
                "Could not record failed reaction; it will not be retried",
                extra={"event_id": event.event_id, "error": str(e)},
            )

    async def _forget_failure(self, event_id: str) -> None:
        try:
            with self.db.transaction() as conn:
                conn.execute("DELETE FROM failed_reactions WHERE event_id = ?", (event_id,))
        except (TransientError, sqlite3.Error) as e:
            # A stale row only causes a replay, which the ledger skips.
            logger.warning(
                "Could not clear failed reaction",
                extra={"event_id": event_id, "error": str(e)},
            )

    async def is_applied(self, event_id: str, handler: str) -> bool:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM applied_reactions WHERE event_id = ? AND handler = ?",
                (event_id, handler),
            ).fetchone()
        return row is not None

    async def _record_applied(self, event_id: str, handler: str) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO applied_reactions (event_id, handler, applied_at) "
                "VALUES (?, ?, ?)",
                (event_id, handler, now_ms()),
            )

    async def _run_handler(
        self,
        result: ReactionResult,
        handler: str,
        run: Callable[[], Awaitable[Any]],
    ) -> Any:
        event_id = result.event.event_id
        try:
            if await self.is_applied(event_id, handler):
                result.handlers_skipped.append(handler)
                return None
        except TransientError as e:
            result.success = False
            result.error = f"{handler}: {e.message}"
            return None

        attempt = 0
        while True:
            try:
                value = await run()
                await self._record_applied(event_id, handler)
                result.handlers_run.append(handler)
                return value
            except TransientError as e:
                attempt += 1
                if attempt > self.config.max_retries:
                    result.success = False
                    result.error = f"{handler}: {e.message}"
                    return None
                logger.warning(
                    "Transient reaction error, retrying",
                    extra={"event_id": event_id, "handler": handler, "attempt": attempt},
                )
                await asyncio.sleep(self.config.retry_delay_ms * attempt / 1000.0)
            except Exception as e:
                logger.error(f"Error in {handler} reaction: {e}", exc_info=True)
                result.success = False
                result.error = f"{handler}: {e}"
                return None

    async def _process_record(self, record: BusRecord) -> ReactionResult | None:
        try:
            event = DomainEvent.from_dict(record.value_json())
        except Exception as e:
            self._failed_count += 1
            logger.error(
                f"Undecodable domain event at {record.position}: {e}",
                extra={"position": str(record.position)},
            )
            return None
        return await self.handle(event)

    @property
    def stats(self) -> dict[str, Any]:
        """Get reactor statistics."""
        return {
            "running": self._running,
            "processed_count": self._processed_count,
            "skipped_count": self._skipped_count,
            "failed_count": self._failed_count,
            "last_position": str(self._last_position) if self._last_position else None,
        }
