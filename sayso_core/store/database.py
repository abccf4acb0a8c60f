"""
Shared SQLite database handle for Sayso Core.

Every store, the uniqueness guard and the derived-state engine share one
SQLite file. This module owns connection setup and the write transaction
shape they all use.

Invariants:
    - One connection per operation, closed on exit
    - Writes run inside BEGIN IMMEDIATE, so the database write lock is the
      serialization point for concurrent writers
    - A locked or unavailable database surfaces as TransientError

How to change safely:
    - Keep PRAGMAs identical across connections; foreign_keys is per-connection
    - Never hold a transaction open across an await
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import TransientError
from .schema import SCHEMA_SQL, SCHEMA_VERSION

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


class Database:
    """Connection factory for the shared SQLite file.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode and busy_timeout.

    Example:
        >>> db = Database("/var/lib/sayso")
        >>> db.initialize()
        >>> with db.transaction() as conn:
        ...     conn.execute("UPDATE identities SET role = 'admin' WHERE id = ?", ("u1",))
    """

    def __init__(
        self,
        data_dir: str,
        db_filename: str = "sayso.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -16000,
    ) -> None:
        """Initialize the database handle.

        Args:
            data_dir: Directory for the SQLite database file
            db_filename: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_filename
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages

    @classmethod
    def from_config(cls, config) -> Database:
        """Build from a StorageConfig."""
        return cls(
            data_dir=config.data_dir,
            db_filename=config.db_filename,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
            cache_size_pages=config.cache_size_pages,
        )

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Yields:
            SQLite connection in autocommit mode

        Raises:
            TransientError: If the database file cannot be opened
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.OperationalError as e:
            raise TransientError("Store unavailable", cause=str(e)) from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside a BEGIN IMMEDIATE write transaction.

        Commits on normal exit, rolls back on any exception.

        Raises:
            TransientError: If the write lock could not be taken in time
        """
        with self.connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise TransientError("Store is busy", cause=str(e)) from e

            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.OperationalError as e:
                conn.execute("ROLLBACK")
                if "locked" in str(e) or "busy" in str(e):
                    raise TransientError("Store is busy", cause=str(e)) from e
                raise
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    def initialize(self) -> None:
        """Create the schema if it does not exist yet."""
        with self.connect() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                (SCHEMA_VERSION, now_ms()),
            )
        logger.info("Initialized database", extra={"db_path": str(self.db_path)})
