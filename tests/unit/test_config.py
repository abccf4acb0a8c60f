"""
Unit tests for environment configuration.

Tests cover:
- Defaults
- Environment overrides
- Validation failures
"""

import pytest

from sayso_core.config import (
    BusBackend,
    BusConfig,
    CoreConfig,
    NotificationConfig,
    ReactionMode,
    StorageConfig,
)


class TestConfig:
    """Tests for CoreConfig and its sections."""

    def test_defaults(self, monkeypatch):
        """Unset environment gives inline reactions on the memory bus."""
        for name in ("EVENT_BUS_BACKEND", "REACTION_MODE", "EVENT_TOPIC", "DATA_DIR"):
            monkeypatch.delenv(name, raising=False)

        config = CoreConfig.from_env()

        assert config.bus.backend == BusBackend.MEMORY
        assert config.bus.reaction_mode == ReactionMode.INLINE
        assert config.bus.topic == "sayso-domain-events"
        assert config.storage.db_filename == "sayso.db"
        assert config.notifications.highly_rated_threshold == 4.5
        assert config.notifications.highly_rated_min_reviews == 5

    def test_environment_overrides(self, monkeypatch):
        """Environment variables override defaults."""
        monkeypatch.setenv("DATA_DIR", "/tmp/sayso-test")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("REACTION_MODE", "queue")
        monkeypatch.setenv("HIGHLY_RATED_MIN_REVIEWS", "10")

        storage = StorageConfig.from_env()
        bus = BusConfig.from_env()
        notifications = NotificationConfig.from_env()

        assert storage.data_dir == "/tmp/sayso-test"
        assert storage.wal_mode is False
        assert bus.reaction_mode == ReactionMode.QUEUE
        assert notifications.highly_rated_min_reviews == 10

    def test_unknown_backend_rejected(self, monkeypatch):
        """An unknown bus backend is a configuration error."""
        monkeypatch.setenv("EVENT_BUS_BACKEND", "carrier-pigeon")

        with pytest.raises(ValueError):
            BusConfig.from_env()

    def test_unknown_reaction_mode_rejected(self, monkeypatch):
        monkeypatch.setenv("REACTION_MODE", "eventually")

        with pytest.raises(ValueError):
            BusConfig.from_env()

    def test_threshold_out_of_range_rejected(self):
        """Highly-rated threshold must be a valid star rating."""
        config = CoreConfig(notifications=NotificationConfig(highly_rated_threshold=7.0))

        with pytest.raises(ValueError):
            config.validate()

    def test_bad_log_format_rejected(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "xml")

        with pytest.raises(ValueError):
            CoreConfig.from_env()

    def test_config_is_frozen(self):
        """Sections are immutable once loaded."""
        storage = StorageConfig()

        with pytest.raises(AttributeError):
            storage.data_dir = "/elsewhere"
