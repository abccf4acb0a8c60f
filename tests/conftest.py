"""
Shared fixtures for Sayso Core tests.

Every test gets its own temporary SQLite file with the schema applied.
"""

import tempfile

import pytest

from sayso_core.config import NotificationConfig
from sayso_core.reactions import DerivedStateEngine, NotificationFanout
from sayso_core.store import Database, NotificationStore, PlatformStore


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def db(data_dir):
    """Initialized database in the temporary directory."""
    database = Database(data_dir, wal_mode=False)
    database.initialize()
    return database


@pytest.fixture
def store(db):
    return PlatformStore(db)


@pytest.fixture
def notifications(db):
    return NotificationStore(db)


@pytest.fixture
def engine(db):
    return DerivedStateEngine(db)


@pytest.fixture
def fanout(store, notifications, engine):
    """Fan-out with a low highly-rated bar so tests need few reviews."""
    config = NotificationConfig(highly_rated_threshold=4.5, highly_rated_min_reviews=2)
    return NotificationFanout(store, notifications, engine, config)


@pytest.fixture
async def owner(store):
    identity = await store.create_identity("owner@example.com", identity_id="owner")
    await store.upsert_profile("owner", display_name="Olive Owner")
    return identity


@pytest.fixture
async def alice(store):
    identity = await store.create_identity("alice@example.com", identity_id="alice")
    await store.upsert_profile("alice", display_name="Alice", username="alice")
    return identity


@pytest.fixture
async def bob(store):
    identity = await store.create_identity("bob@example.com", identity_id="bob")
    await store.upsert_profile("bob", username="bobby")
    return identity


@pytest.fixture
async def admin(store):
    return await store.create_identity("admin@example.com", role="admin", identity_id="admin")


@pytest.fixture
async def business(store, owner):
    return await store.create_business(
        owner.id, "Corner Cafe", fields={"slug": "corner-cafe"}, created_by=owner.id
    )
