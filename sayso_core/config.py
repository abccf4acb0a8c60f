"""
Configuration management for Sayso Core.

Every setting is read from an environment variable; there are no config
files. The worker and the boundary layer build a CoreConfig from the same
variables.

Invariants:
    - Defaults run a single-process deployment with inline reactions
    - Production deployments MUST set explicit values for the bus backend
    - Secrets are never logged or exposed in error messages

How to change safely:
    - A new setting needs a default that keeps existing deployments working
    - Keep env var names stable; workers and the boundary layer share them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class BusBackend(Enum):
    """Supported event bus backends."""

    MEMORY = "memory"
    KAFKA = "kafka"


class ReactionMode(Enum):
    """Where reactions to committed mutations run.

    INLINE runs the reactor in the caller's task right after commit.
    QUEUE publishes the domain event and leaves it to a worker.
    """

    INLINE = "inline"
    QUEUE = "queue"


@dataclass(frozen=True)
class StorageConfig:
    """Shared SQLite store configuration.

    Attributes:
        data_dir: Directory holding the database file
        db_filename: Database file name inside data_dir
        wal_mode: SQLite WAL journal mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/sayso"
    db_filename: str = "sayso.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -16000  # 16MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/sayso"),
            db_filename=os.getenv("DB_FILENAME", "sayso.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-16000")),
        )


@dataclass(frozen=True)
class BusConfig:
    """Event bus selection.

    Attributes:
        backend: Which bus implementation carries domain events
        topic: Topic that domain events are published to
        reaction_mode: Inline reactions or queued reactions
    """

    backend: BusBackend = BusBackend.MEMORY
    topic: str = "sayso-domain-events"
    reaction_mode: ReactionMode = ReactionMode.INLINE

    @classmethod
    def from_env(cls) -> BusConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If EVENT_BUS_BACKEND or REACTION_MODE is unknown
        """
        backend_str = os.getenv("EVENT_BUS_BACKEND", "memory").lower()
        try:
            backend = BusBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid EVENT_BUS_BACKEND '{backend_str}'. Must be one of: memory, kafka"
            )

        mode_str = os.getenv("REACTION_MODE", "inline").lower()
        try:
            mode = ReactionMode(mode_str)
        except ValueError:
            raise ValueError(f"Invalid REACTION_MODE '{mode_str}'. Must be one of: inline, queue")

        return cls(
            backend=backend,
            topic=os.getenv("EVENT_TOPIC", "sayso-domain-events"),
            reaction_mode=mode,
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda event bus configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        consumer_group: Consumer group ID for the reactor
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Enable idempotent producer
        max_in_flight: Maximum in-flight requests per connection
    """

    brokers: str = "localhost:9092"
    consumer_group: str = "sayso-reactor"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    # Producer durability settings
    acks: str = "all"
    enable_idempotence: bool = True
    max_in_flight: int = 5
    # Consumer settings
    auto_offset_reset: str = "earliest"

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "sayso-reactor"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=os.getenv("KAFKA_ENABLE_IDEMPOTENCE", "true").lower() == "true",
            max_in_flight=int(os.getenv("KAFKA_MAX_IN_FLIGHT", "5")),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
        )


@dataclass(frozen=True)
class ReactorConfig:
    """Reactor loop configuration.

    Attributes:
        retry_delay_ms: Base delay between retries on transient errors
        max_retries: Maximum retries for transient errors
    """

    retry_delay_ms: int = 100
    max_retries: int = 3

    @classmethod
    def from_env(cls) -> ReactorConfig:
        """Load configuration from environment variables."""
        return cls(
            retry_delay_ms=int(os.getenv("REACTOR_RETRY_DELAY_MS", "100")),
            max_retries=int(os.getenv("REACTOR_MAX_RETRIES", "3")),
        )


@dataclass(frozen=True)
class NotificationConfig:
    """Notification fan-out configuration.

    Attributes:
        highly_rated_threshold: Average rating at or above which a business is highly rated
        highly_rated_min_reviews: Review count required before the threshold applies
    """

    highly_rated_threshold: float = 4.5
    highly_rated_min_reviews: int = 5

    @classmethod
    def from_env(cls) -> NotificationConfig:
        """Load configuration from environment variables."""
        return cls(
            highly_rated_threshold=float(os.getenv("HIGHLY_RATED_THRESHOLD", "4.5")),
            highly_rated_min_reviews=int(os.getenv("HIGHLY_RATED_MIN_REVIEWS", "5")),
        )


@dataclass(frozen=True)
class RateLimitConfig:
    """Rate-limit counter housekeeping.

    Attributes:
        retention_hours: Counters idle for longer than this are removed
        cleanup_interval_seconds: Interval between cleanup passes in the worker
    """

    retention_hours: int = 24
    cleanup_interval_seconds: int = 3600

    @classmethod
    def from_env(cls) -> RateLimitConfig:
        """Load configuration from environment variables."""
        return cls(
            retention_hours=int(os.getenv("RATE_LIMIT_RETENTION_HOURS", "24")),
            cleanup_interval_seconds=int(os.getenv("RATE_LIMIT_CLEANUP_INTERVAL_SECONDS", "3600")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class CoreConfig:
    """Complete core configuration.

    One field per section; validate() checks the cross-section rules.

    Attributes:
        storage: Shared SQLite store configuration
        bus: Event bus selection and reaction mode
        kafka: Kafka configuration (if bus backend is KAFKA)
        reactor: Reactor retry configuration
        notifications: Fan-out thresholds
        rate_limit: Rate-limit counter housekeeping
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    bus: BusConfig = field(default_factory=BusConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    reactor: ReactorConfig = field(default_factory=ReactorConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> CoreConfig:
        """Load complete configuration from environment variables.

        Returns:
            CoreConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            bus=BusConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            reactor=ReactorConfig.from_env(),
            notifications=NotificationConfig.from_env(),
            rate_limit=RateLimitConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.bus.backend == BusBackend.KAFKA and not self.kafka.brokers:
            raise ValueError("KAFKA_BROKERS is required when EVENT_BUS_BACKEND=kafka")

        if not self.bus.topic:
            raise ValueError("EVENT_TOPIC must not be empty")

        if self.reactor.max_retries < 0:
            raise ValueError("REACTOR_MAX_RETRIES must be >= 0")

        if not 1.0 <= self.notifications.highly_rated_threshold <= 5.0:
            raise ValueError("HIGHLY_RATED_THRESHOLD must be between 1 and 5")

        if self.rate_limit.retention_hours <= 0:
            raise ValueError("RATE_LIMIT_RETENTION_HOURS must be positive")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be one of: json, text")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Core configuration loaded",
            extra={
                "bus_backend": self.bus.backend.value,
                "event_topic": self.bus.topic,
                "reaction_mode": self.bus.reaction_mode.value,
                "kafka_brokers": self.kafka.brokers
                if self.bus.backend == BusBackend.KAFKA
                else None,
                "data_dir": self.storage.data_dir,
                "highly_rated_threshold": self.notifications.highly_rated_threshold,
                "log_level": self.observability.log_level,
            },
        )
