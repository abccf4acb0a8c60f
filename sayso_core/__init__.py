"""
Sayso Core - authorization, reaction and consistency core of a local-business
review platform.

This package sits between the request layer and storage:
- Policy evaluation over ownership relations (owner, team member, admin)
- Uniqueness guard for the primary-image and one-vote-per-review invariants
- Derived state (review counters, ratings, freshness) recomputed on commit
- Deduplicated notification fan-out

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │  Boundary   │────▶│ CoreService │────▶│ Policy + Guard  │
    │ (handlers)  │     │             │     │  + Stores       │
    └─────────────┘     └──────┬──────┘     └─────────────────┘
                               │ DomainEvent
                    inline ────┼──── queue (event bus)
                               ▼
                        ┌─────────────┐
                        │   Reactor   │
                        └──────┬──────┘
                     ┌─────────┴─────────┐
                     ▼                   ▼
              ┌─────────────┐     ┌─────────────┐
              │  Derived    │     │ Notification│
              │  state      │     │  fan-out    │
              └─────────────┘     └─────────────┘

Invariants:
    - Nothing is written before authorization succeeds
    - Reactions are idempotent per (event, handler)
    - Denials never reveal which rule failed to the caller
"""

from ._version import __version__

__all__ = ["__version__"]
