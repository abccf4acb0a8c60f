"""
Sayso Core Test Suite.

This package contains:
- unit/: Unit tests (temporary SQLite files, in-memory bus)
- integration/: Integration tests (service, reactor and bus wired together)
"""
