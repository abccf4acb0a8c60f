"""
SQLite persistence for Sayso Core.

All stores share one database file through a Database handle.
"""

from .database import Database, now_ms
from .notification_store import NotificationStore
from .platform_store import PlatformStore
from .rate_limit_store import AttemptType, RateLimitState, RateLimitStore

__all__ = [
    "AttemptType",
    "Database",
    "NotificationStore",
    "PlatformStore",
    "RateLimitState",
    "RateLimitStore",
    "now_ms",
]
