"""
Reactions to committed mutations: derived state and notification fan-out.
"""

from .derived_state import DerivedStateEngine, changed_meaningful_fields
from .fanout import FanoutResult, NotificationFanout
from .reactor import ReactionResult, Reactor

__all__ = [
    "DerivedStateEngine",
    "FanoutResult",
    "NotificationFanout",
    "ReactionResult",
    "Reactor",
    "changed_meaningful_fields",
]
