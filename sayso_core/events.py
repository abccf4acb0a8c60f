"""
Domain events emitted after a mutation commits.

A DomainEvent describes one committed change. The reactor turns it into
derived-state updates and notifications; the event_id is the idempotency
key that makes replays safe.

Invariants:
    - event_id is unique per committed change and stable across replays
    - payload carries everything a reaction needs that may be gone from
      the store by the time it runs (e.g. the target of a deleted review)
    - Encoding is JSON; unknown fields are ignored on decode

How to change safely:
    - Add new kinds, never rename existing values (queued events use them)
    - New payload keys must be optional for consumers
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .store.database import now_ms


class EventKind(Enum):
    BUSINESS_CREATED = "business.created"
    BUSINESS_UPDATED = "business.updated"
    BUSINESS_DELETED = "business.deleted"
    EVENT_CREATED = "event.created"
    REVIEW_CREATED = "review.created"
    REVIEW_UPDATED = "review.updated"
    REVIEW_DELETED = "review.deleted"
    REPLY_CREATED = "reply.created"
    VOTE_CREATED = "vote.created"
    VOTE_DELETED = "vote.deleted"
    BADGE_AWARDED = "badge.awarded"
    IDENTITY_DELETED = "identity.deleted"


@dataclass
class DomainEvent:
    """One committed change.

    Attributes:
        event_id: Idempotency key
        kind: What happened
        actor_id: Identity that caused it, None for guests and system jobs
        resource_type: Type of the changed resource
        resource_id: Id of the changed resource
        payload: Kind-specific data
        ts_ms: Commit time (Unix ms)
    """

    kind: EventKind
    resource_type: str
    resource_id: str
    actor_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ts_ms: int = field(default_factory=now_ms)

    @property
    def partition_key(self) -> str:
        """Events about one aggregate target share a partition."""
        target_id = self.payload.get("target_id")
        return str(target_id) if target_id else self.resource_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "actor_id": self.actor_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "payload": self.payload,
            "ts_ms": self.ts_ms,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DomainEvent:
        """Create from a decoded message.

        Raises:
            ValueError: If a required field is missing or the kind is unknown
        """
        for required in ("event_id", "kind", "resource_type", "resource_id", "ts_ms"):
            if required not in data:
                raise ValueError(f"Domain event missing required field: {required}")
        return cls(
            event_id=data["event_id"],
            kind=EventKind(data["kind"]),
            actor_id=data.get("actor_id"),
            resource_type=data["resource_type"],
            resource_id=data["resource_id"],
            payload=data.get("payload") or {},
            ts_ms=data["ts_ms"],
        )
