"""SQLite connection lifecycle, schema and migrations.

One connection is shared by the whole process. Access is serialized with a
re-entrant lock, so the detail-fetch worker threads may never write through a
half-initialized handle.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence, Union

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

Params = Union[Sequence[Any], dict]

SCHEMA = """
CREATE TABLE IF NOT EXISTS api_raw_responses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source TEXT NOT NULL,
    endpoint TEXT NOT NULL,
    fetched_at TEXT NOT NULL,
    status_code INTEGER,
    payload TEXT NOT NULL,
    checksum TEXT
);
CREATE INDEX IF NOT EXISTS idx_api_raw_responses_source ON api_raw_responses (source);
CREATE INDEX IF NOT EXISTS idx_api_raw_responses_fetched_at ON api_raw_responses (fetched_at);
CREATE INDEX IF NOT EXISTS idx_api_raw_responses_endpoint ON api_raw_responses (source, endpoint);

CREATE TABLE IF NOT EXISTS pr_facts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner TEXT NOT NULL,
    repo TEXT NOT NULL,
    pr_url TEXT NOT NULL,
    merged_at TEXT NOT NULL,
    title TEXT NOT NULL,
    author TEXT NOT NULL,
    author_url TEXT NOT NULL,
    kind TEXT NOT NULL,
    points REAL NOT NULL,
    source_row_id INTEGER NOT NULL,
    fetched_at TEXT NOT NULL,
    UNIQUE(owner, repo, pr_url)
);

CREATE TABLE IF NOT EXISTS author_stats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner TEXT NOT NULL,
    repo TEXT NOT NULL,
    days INTEGER NOT NULL,
    since_iso TEXT NOT NULL,
    until_iso TEXT NOT NULL,
    author TEXT NOT NULL,
    author_url TEXT NOT NULL,
    total_score REAL NOT NULL,
    total_prs INTEGER NOT NULL,
    feat_count INTEGER NOT NULL,
    fix_count INTEGER NOT NULL,
    chore_count INTEGER NOT NULL,
    revert_count INTEGER NOT NULL,
    other_count INTEGER NOT NULL,
    computed_at TEXT NOT NULL,
    UNIQUE(owner, repo, days, author)
);
CREATE INDEX IF NOT EXISTS idx_author_stats_owner_repo_days ON author_stats (owner, repo, days);
"""

PR_FACTS_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_pr_facts_owner_repo ON pr_facts (owner, repo);
CREATE INDEX IF NOT EXISTS idx_pr_facts_merged_at ON pr_facts (merged_at);
CREATE INDEX IF NOT EXISTS idx_pr_facts_owner_repo_merged_at ON pr_facts (owner, repo, merged_at);
CREATE INDEX IF NOT EXISTS idx_pr_facts_owner_repo_author ON pr_facts (owner, repo, author);
"""


class Database:
    """Lazily opened SQLite database with idempotent one-time schema setup."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _connect(self) -> sqlite3.Connection:
        if self._connection is None:
            if self.path != ":memory:":
                directory = os.path.dirname(os.path.abspath(self.path))
                os.makedirs(directory, exist_ok=True)
            connection = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
            connection.row_factory = sqlite3.Row
            self._connection = connection
        return self._connection

    def init(self) -> "Database":
        """Open the connection, apply pragmas, create tables and run migrations.

        Safe to call repeatedly and from several threads; only the first call
        does any work.
        """
        with self._lock:
            if self._initialized:
                return self
            connection = self._connect()
            connection.execute("PRAGMA journal_mode = WAL")
            connection.execute("PRAGMA foreign_keys = ON")
            connection.execute("PRAGMA synchronous = NORMAL")
            self._migrate_pr_facts_points_to_real(connection)
            connection.executescript(SCHEMA)
            connection.executescript(PR_FACTS_INDEXES)
            self._initialized = True
            logger.debug("Initialized database", extra={"db_path": self.path})
            return self

    def _migrate_pr_facts_points_to_real(self, connection: sqlite3.Connection) -> None:
        """Rebuild ``pr_facts`` with a REAL ``points`` column when an older INTEGER one exists.

        SQLite cannot alter a column type in place, so the table is copied
        inside one transaction; every row and id is preserved.
        """
        exists = connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'pr_facts'"
        ).fetchone()
        if exists is None:
            return

        columns = connection.execute("PRAGMA table_info(pr_facts)").fetchall()
        points_column = next((column for column in columns if column["name"] == "points"), None)
        if points_column is None or str(points_column["type"]).upper() == "REAL":
            return

        logger.info("Migrating pr_facts.points to REAL", extra={"db_path": self.path})
        connection.execute("BEGIN")
        try:
            connection.execute(
                """
                CREATE TABLE pr_facts_new (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner TEXT NOT NULL,
                    repo TEXT NOT NULL,
                    pr_url TEXT NOT NULL,
                    merged_at TEXT NOT NULL,
                    title TEXT NOT NULL,
                    author TEXT NOT NULL,
                    author_url TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    points REAL NOT NULL,
                    source_row_id INTEGER NOT NULL,
                    fetched_at TEXT NOT NULL,
                    UNIQUE(owner, repo, pr_url)
                )
                """
            )
            connection.execute(
                """
                INSERT INTO pr_facts_new (
                    id, owner, repo, pr_url, merged_at, title, author, author_url,
                    kind, points, source_row_id, fetched_at
                )
                SELECT
                    id, owner, repo, pr_url, merged_at, title, author, author_url,
                    kind, CAST(points AS REAL), source_row_id, fetched_at
                FROM pr_facts
                """
            )
            connection.execute("DROP TABLE pr_facts")
            connection.execute("ALTER TABLE pr_facts_new RENAME TO pr_facts")
            connection.execute("COMMIT")
        except sqlite3.Error:
            connection.execute("ROLLBACK")
            raise

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of statements atomically while holding the connection lock."""
        with self._lock:
            self.init()
            connection = self._connect()
            connection.execute("BEGIN")
            try:
                yield connection
            except BaseException:
                connection.execute("ROLLBACK")
                raise
            connection.execute("COMMIT")

    def execute(self, query: str, params: Params = ()) -> sqlite3.Cursor:
        with self._lock:
            self.init()
            return self._connect().execute(query, params)

    def fetch_all(self, query: str, params: Params = ()) -> List[sqlite3.Row]:
        with self._lock:
            self.init()
            return self._connect().execute(query, params).fetchall()

    def fetch_one(self, query: str, params: Params = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            self.init()
            return self._connect().execute(query, params).fetchone()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
            self._connection = None
            self._initialized = False


_database: Optional[Database] = None
_database_lock = threading.Lock()


def init_database(path: str) -> Database:
    """Create (once) and initialize the process-wide database.

    Call this before starting any worker threads. Repeated calls with the same
    path return the existing instance; a different path is a configuration bug.
    """
    global _database
    with _database_lock:
        if _database is None:
            _database = Database(path)
        elif _database.path != path:
            raise ConfigurationError(
                f"Database already initialized at '{_database.path}', cannot switch to '{path}'."
            )
        return _database.init()


def get_database() -> Database:
    """Return the process-wide database initialized by :func:`init_database`."""
    with _database_lock:
        if _database is None or not _database.initialized:
            raise ConfigurationError("Database has not been initialized; call init_database() first.")
        return _database


def close_database() -> None:
    global _database
    with _database_lock:
        if _database is not None:
            _database.close()
        _database = None
