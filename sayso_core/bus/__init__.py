"""
Domain event bus for Sayso Core.

Backends:
- InMemoryEventBus: tests and single-process deployments
- KafkaEventBus: production, via aiokafka

Import KafkaEventBus from sayso_core.bus.kafka; it pulls in aiokafka.
"""

from .base import (
    BusConnectionError,
    BusError,
    BusPosition,
    BusRecord,
    BusSerializationError,
    BusTimeoutError,
    EventBus,
    create_event_bus,
)
from .memory import InMemoryEventBus

__all__ = [
    "BusConnectionError",
    "BusError",
    "BusPosition",
    "BusRecord",
    "BusSerializationError",
    "BusTimeoutError",
    "EventBus",
    "InMemoryEventBus",
    "create_event_bus",
]
