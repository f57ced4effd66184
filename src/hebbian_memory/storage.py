"""Core storage layer for the Hebbian memory engine.

Manages a SQLite database holding neurons, synapses, the episodic access
log and session counters.  sqlite-vec is loaded when available so recall
can score embeddings inside SQL.  All public methods are async-friendly,
wrapping synchronous sqlite3 calls via :func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations in-process.
    - Thread-local persistent connections -- each thread pool worker keeps one
      long-lived connection open, eliminating per-call open/close overhead.
    - WAL mode enables concurrent readers alongside a single writer, and
      ``BEGIN IMMEDIATE`` serialises writers across processes.
    - Lock contention that outlasts SQLite's busy timeout is retried with
      exponential backoff and finally surfaces as :class:`StoreBusy`.
    - ``":memory:"`` selects an ephemeral store backed by one shared
      connection; reads and writes both go through the store lock.

Usage::

    from hebbian_memory.storage import Storage

    async with Storage(config.db_path) as store:
        rows = await store.execute("SELECT COUNT(*) FROM neurons")
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import struct
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, TypeVar

import anyio
import sqlite_vec

from hebbian_memory.config import HebbianConfig, get_config
from hebbian_memory.exceptions import (
    StoreBusy,
    StoreCorrupt,
    StoreError,
    StoreUnavailable,
)

_T = TypeVar("_T")

log = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"
"""Sentinel path selecting the ephemeral in-memory store."""

# ---------------------------------------------------------------------------
# Embedding serialisation helpers
# ---------------------------------------------------------------------------


def serialize_embedding(vec: list[float]) -> bytes:
    """Pack a float vector into a compact binary representation.

    Parameters
    ----------
    vec:
        A list of floats.

    Returns
    -------
    bytes
        Little-endian packed float32 values, the layout sqlite-vec expects.
    """
    return struct.pack(f"<{len(vec)}f", *vec)


def deserialize_embedding(data: bytes) -> list[float]:
    """Unpack binary embedding data back into a list of floats.

    Parameters
    ----------
    data:
        Bytes previously produced by :func:`serialize_embedding`.

    Returns
    -------
    list[float]
        The original float vector (at float32 precision).
    """
    count = len(data) // struct.calcsize("<f")
    return list(struct.unpack(f"<{count}f", data))


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utcnow_iso() -> str:
    """Current UTC time as a fixed-width ISO-8601 string.

    A fixed width keeps lexicographic and chronological order identical,
    which the window and retention queries rely on.
    """
    return datetime.now(tz=timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored timestamp, assuming UTC when no offset is present."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_between(earlier: str | None, now: datetime) -> float:
    """Fractional days from *earlier* to *now*; ``0.0`` when unknown or in the future."""
    parsed = parse_timestamp(earlier)
    if parsed is None:
        return 0.0
    return max(0.0, (now - parsed).total_seconds() / 86400.0)


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Memory units: one row per (type, path)
CREATE TABLE IF NOT EXISTS neurons (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL,
    type TEXT NOT NULL CHECK(type IN ('file','tool','error','semantic')),
    access_count INTEGER NOT NULL DEFAULT 0,
    myelination REAL NOT NULL DEFAULT 0.0,
    contexts TEXT NOT NULL DEFAULT '[]',
    embedding BLOB,
    created_at TEXT NOT NULL,
    last_accessed_at TEXT,
    last_decayed_at TEXT,
    UNIQUE(type, path)
);

-- Co-activation edges.  Undirected pairs are stored with source_id < target_id.
CREATE TABLE IF NOT EXISTS synapses (
    source_id INTEGER NOT NULL REFERENCES neurons(id) ON DELETE CASCADE,
    target_id INTEGER NOT NULL REFERENCES neurons(id) ON DELETE CASCADE,
    weight REAL NOT NULL CHECK(weight >= 0.0 AND weight <= 1.0),
    co_activation_count INTEGER NOT NULL DEFAULT 1,
    last_reinforced_at TEXT NOT NULL,
    last_decayed_at TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (source_id, target_id),
    CHECK(source_id != target_id)
);

-- Episodic trace of every record() call; feeds co-activation windows,
-- session replay and cross-session pattern discovery.
CREATE TABLE IF NOT EXISTS access_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    neuron_id INTEGER NOT NULL REFERENCES neurons(id) ON DELETE CASCADE,
    session_id TEXT NOT NULL,
    query TEXT,
    token_cost INTEGER NOT NULL DEFAULT 0,
    access_order INTEGER NOT NULL,
    accessed_at TEXT NOT NULL
);

-- Per-session counters
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    started_at TEXT NOT NULL,
    last_active_at TEXT,
    total_accesses INTEGER NOT NULL DEFAULT 0,
    tokens_used INTEGER NOT NULL DEFAULT 0,
    tokens_saved INTEGER NOT NULL DEFAULT 0,
    recalls INTEGER NOT NULL DEFAULT 0,
    intent TEXT
);

-- Neurons surfaced by recall, per session.  Read back against access_log to
-- find suggestions the session never opened.
CREATE TABLE IF NOT EXISTS recall_log (
    session_id TEXT NOT NULL,
    neuron_id INTEGER NOT NULL REFERENCES neurons(id) ON DELETE CASCADE,
    recalled_at TEXT NOT NULL,
    PRIMARY KEY (session_id, neuron_id)
);

-- Audit log for consolidation runs
CREATE TABLE IF NOT EXISTS consolidation_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    details TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Advisory locks for cross-process mutual exclusion
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

# Indexes created after migrations (some reference migrated columns).
_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_neurons_type ON neurons(type);
CREATE INDEX IF NOT EXISTS idx_neurons_myelination ON neurons(myelination DESC);
CREATE INDEX IF NOT EXISTS idx_synapses_source_weight
    ON synapses(source_id, weight DESC);
CREATE INDEX IF NOT EXISTS idx_synapses_target_weight
    ON synapses(target_id, weight DESC);
CREATE INDEX IF NOT EXISTS idx_access_log_session
    ON access_log(session_id, access_order DESC);
CREATE INDEX IF NOT EXISTS idx_access_log_time ON access_log(accessed_at);
CREATE INDEX IF NOT EXISTS idx_access_log_neuron ON access_log(neuron_id);
CREATE INDEX IF NOT EXISTS idx_recall_log_time ON recall_log(recalled_at);
"""

# Columns added after the first schema version: (table, column, DDL type).
_MIGRATED_COLUMNS: tuple[tuple[str, str, str], ...] = (
    ("neurons", "last_decayed_at", "TEXT"),
    ("synapses", "last_decayed_at", "TEXT"),
    ("sessions", "recalls", "INTEGER NOT NULL DEFAULT 0"),
    ("sessions", "last_active_at", "TEXT"),
    ("sessions", "intent", "TEXT"),
)

# ---------------------------------------------------------------------------
# SQLite error classification
# ---------------------------------------------------------------------------

_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")
_CORRUPT_MARKERS = ("file is not a database", "malformed", "file is encrypted")
_UNAVAILABLE_MARKERS = (
    "unable to open",
    "readonly database",
    "disk i/o error",
    "database or disk is full",
)


def _is_busy(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


def _classify_error(operation: str, exc: sqlite3.Error) -> StoreError | None:
    """Map a sqlite3 error to the store taxonomy, or ``None`` to re-raise as is."""
    message = str(exc).lower()
    if any(marker in message for marker in _CORRUPT_MARKERS):
        return StoreCorrupt(operation, str(exc))
    if any(marker in message for marker in _UNAVAILABLE_MARKERS):
        return StoreUnavailable(operation, str(exc))
    return None


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend for the Hebbian memory engine.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file, or ``":memory:"`` for
        an ephemeral store.  Parent directories are created automatically
        during :meth:`initialize`.  Defaults to ``config.db_path``.
    config:
        Configuration to use.  Defaults to :func:`get_config`.  Components
        built on this store read their policy constants from here.
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        config: HebbianConfig | None = None,
    ) -> None:
        self._cfg = config or get_config()
        raw_path = db_path if db_path is not None else self._cfg.db_path
        self._in_memory = str(raw_path) == MEMORY_PATH
        self._db_path: Path = Path(str(raw_path))
        self._backup_dir: Path = self._cfg.backup_dir
        self._backup_count: int = self._cfg.backup_count
        self._write_lock = threading.Lock()
        self._local = threading.local()  # thread-local persistent connections
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()  # guards _all_connections
        self._shared_conn: sqlite3.Connection | None = None  # in-memory mode only
        self._initialized = False
        # Bumped by close(); thread-local connections from an older generation
        # are stale and reopened on next use.
        self._generation = 0
        self._closed = False
        self._vec_available = False

    @classmethod
    def in_memory(cls, config: HebbianConfig | None = None) -> Storage:
        """Build an ephemeral store that disappears on :meth:`close`."""
        return cls(MEMORY_PATH, config=config)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    @property
    def config(self) -> HebbianConfig:
        """Configuration shared with every component built on this store."""
        return self._cfg

    @property
    def in_memory_mode(self) -> bool:
        """Whether this store is ephemeral."""
        return self._in_memory

    @property
    def vec_available(self) -> bool:
        """Whether the sqlite-vec extension loaded successfully."""
        return self._vec_available

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        This method is idempotent and safe to call multiple times.  It:

        1. Creates the database directory (file mode).
        2. Opens a connection with WAL mode and sqlite-vec loaded (if available).
        3. Creates all tables and indexes, migrating older databases.
        4. Runs an automatic backup when ``config.backup_on_init`` is set.

        Raises
        ------
        StoreUnavailable
            If the file or its directory cannot be created or opened.
        StoreCorrupt
            If the file exists but is not a SQLite database.
        """
        self._closed = False
        await anyio.to_thread.run_sync(
            lambda: self._with_retry("initialize", self._initialize_sync),
        )
        self._initialized = True
        log.info(
            "Storage initialised at %s (vec=%s)",
            self._db_path,
            self._vec_available,
        )

    def _initialize_sync(self) -> None:
        """Synchronous initialisation run inside a worker thread."""
        if not self._in_memory:
            try:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StoreUnavailable(
                    "initialize", str(exc), identifier=str(self._db_path)
                ) from exc

        self._vec_available = self._check_vec_support()

        if self._in_memory:
            conn = self._get_connection()
            self._create_schema(conn)
            return

        # Dedicated one-time connection for schema setup (not thread-local).
        conn = self._open_connection()
        try:
            self._create_schema(conn)
        finally:
            conn.close()

        if self._cfg.backup_on_init:
            self._backup_sync()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        with self._write_lock:
            conn.executescript(_SCHEMA_SQL)
            # Migrations must run BEFORE index creation.
            self._run_migrations(conn)
            conn.executescript(_INDEX_SQL)
            conn.commit()

    def _run_migrations(self, conn: sqlite3.Connection) -> None:
        """Add columns that databases from older schema versions lack."""
        for table, column, ddl in _MIGRATED_COLUMNS:
            existing = {
                row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
            }
            if column not in existing:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
                log.info("Migration: added %s.%s", table, column)

    def _check_vec_support(self) -> bool:
        """Check whether sqlite-vec can be loaded in this environment.

        Returns ``True`` if the extension loaded and the vec functions are
        usable, ``False`` otherwise.  Performed once during
        :meth:`initialize`; recall falls back to Python cosine scoring when
        the extension is missing.
        """
        conn = sqlite3.connect(MEMORY_PATH)
        try:
            if not hasattr(conn, "enable_load_extension"):
                log.warning(
                    "sqlite3 module compiled without extension loading support; "
                    "embedding scoring will run in Python"
                )
                return False

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            conn.execute("SELECT vec_version()").fetchone()
            log.debug("sqlite-vec extension loaded successfully")
            return True
        except (AttributeError, OSError, sqlite3.OperationalError) as exc:
            log.warning(
                "sqlite-vec extension could not be loaded (%s); "
                "embedding scoring will run in Python",
                exc,
            )
            return False
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the connection for the calling thread.

        File mode: one long-lived connection per worker thread.  In-memory
        mode: the single shared connection (the database lives inside it).
        """
        if self._closed:
            raise StoreUnavailable(
                "connect", "store is closed", identifier=str(self._db_path)
            )
        if self._in_memory:
            if self._shared_conn is None:
                self._shared_conn = self._open_connection()
                with self._connections_lock:
                    self._all_connections.append(self._shared_conn)
            return self._shared_conn

        conn = getattr(self._local, "conn", None)
        if conn is None or getattr(self._local, "generation", None) != self._generation:
            conn = self._open_connection()
            self._local.conn = conn
            self._local.generation = self._generation
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open and configure a new :class:`sqlite3.Connection`.

        Every connection is configured with:

        - WAL journal mode for concurrent reads (file mode).
        - Foreign key enforcement.
        - sqlite-vec extension loaded (when available).
        - Row factory set to :class:`sqlite3.Row` for dict-like access.
        - ``isolation_level=None`` so transactions are explicit.
        """
        busy_ms = self._cfg.storage.busy_timeout_ms
        try:
            conn = sqlite3.connect(
                MEMORY_PATH if self._in_memory else str(self._db_path),
                timeout=busy_ms / 1000.0,
                check_same_thread=False,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise StoreUnavailable(
                "connect", str(exc), identifier=str(self._db_path)
            ) from exc
        conn.row_factory = sqlite3.Row

        if self._vec_available:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)

        if not self._in_memory:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={int(busy_ms)}")

        return conn

    @contextlib.contextmanager
    def _read_guard(self) -> Iterator[None]:
        """Serialise reads only where the connection is shared (in-memory)."""
        if self._in_memory:
            with self._write_lock:
                yield
        else:
            yield

    # ------------------------------------------------------------------
    # Contention handling
    # ------------------------------------------------------------------

    def _with_retry(self, operation: str, fn: Callable[[], _T]) -> _T:
        """Run *fn*, retrying lock contention with exponential backoff.

        Raises
        ------
        StoreBusy
            When the store is still locked after ``busy_retries`` retries.
        StoreCorrupt, StoreUnavailable
            When SQLite reports an unreadable or unwritable database.
        """
        retries = self._cfg.storage.busy_retries
        backoff = self._cfg.storage.busy_backoff_seconds
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except sqlite3.OperationalError as exc:
                if not _is_busy(exc):
                    mapped = _classify_error(operation, exc)
                    if mapped is None:
                        raise
                    raise mapped from exc
                if attempt > retries:
                    raise StoreBusy(operation, attempt, str(exc)) from exc
                delay = backoff * (2 ** (attempt - 1))
                log.warning(
                    "%s: store busy (attempt %d/%d), retrying in %.3fs",
                    operation,
                    attempt,
                    retries + 1,
                    delay,
                )
                time.sleep(delay)
            except sqlite3.DatabaseError as exc:
                mapped = _classify_error(operation, exc)
                if mapped is None:
                    raise
                raise mapped from exc

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows.

        Parameters
        ----------
        sql:
            SQL SELECT statement.
        params:
            Bind parameters (positional tuple or named dict).

        Returns
        -------
        list[sqlite3.Row]
            Result rows with dict-like column access.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._with_retry("execute", lambda: self._execute_sync(sql, params)),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        with self._read_guard():
            conn = self._get_connection()
            cursor = conn.execute(sql, params)
            return cursor.fetchall()

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a single write statement in its own transaction.

        Returns
        -------
        int
            The ``lastrowid`` of the executed statement.
        """
        def _write(conn: sqlite3.Connection) -> int:
            return conn.execute(sql, params).lastrowid or 0

        return await self.execute_transaction(_write, operation="execute_write")

    async def execute_write_returning(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a write query with a RETURNING clause.

        Use this instead of :meth:`execute_write` when the caller needs the
        rows produced by ``RETURNING``.
        """
        def _write(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            return conn.execute(sql, params).fetchall()

        return await self.execute_transaction(_write, operation="execute_write_returning")

    async def execute_many(
        self,
        sql: str,
        params_list: list[tuple | dict],
    ) -> None:
        """Execute a statement for each set of parameters in one transaction."""
        def _write(conn: sqlite3.Connection) -> None:
            conn.executemany(sql, params_list)

        await self.execute_transaction(_write, operation="execute_many")

    async def execute_transaction(
        self,
        fn: Callable[[sqlite3.Connection], _T],
        operation: str = "transaction",
    ) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        The write lock is held for the entire duration, and the callback
        receives a raw :class:`sqlite3.Connection` that is already inside
        a ``BEGIN IMMEDIATE`` transaction.  The framework commits on
        success and rolls back on any exception, so a failure (or a killed
        process) leaves either the pre- or the post-state, never a mix.

        ``BEGIN IMMEDIATE`` acquires the SQLite write lock upfront so that
        every read-modify-write inside the callback is serialised against
        other processes.

        Parameters
        ----------
        fn:
            A synchronous callable that receives a
            :class:`sqlite3.Connection` and returns a value of type *T*.
            It may be re-run after a contention rollback, so it must not
            have side effects outside the database.
        operation:
            Name used in error messages and logs.

        Returns
        -------
        T
            Whatever *fn* returns.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._with_retry(
                operation, lambda: self._execute_transaction_sync(fn)
            ),
        )

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = fn(conn)
                conn.execute("COMMIT")
                return result
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    # ------------------------------------------------------------------
    # Advisory lock helpers
    # ------------------------------------------------------------------

    @staticmethod
    def try_acquire_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> bool:
        """Attempt to acquire a named advisory lock inside a transaction.

        Stale locks older than 10 minutes are automatically cleaned up
        before the acquisition attempt.

        Parameters
        ----------
        conn:
            A connection already inside an active transaction (e.g.
            from :meth:`execute_transaction`).
        name:
            The lock name (primary key in the ``locks`` table).
        holder:
            An identifier for the holder.  Defaults to a random UUID.

        Returns
        -------
        bool
            ``True`` if the lock was acquired, ``False`` if another
            holder already owns it.
        """
        if holder is None:
            holder = uuid.uuid4().hex

        conn.execute(
            "DELETE FROM locks WHERE name = ? AND acquired_at < datetime('now', '-10 minutes')",
            (name,),
        )

        try:
            conn.execute(
                "INSERT INTO locks (name, holder) VALUES (?, ?)",
                (name, holder),
            )
            return True
        except sqlite3.IntegrityError:
            return False

    @staticmethod
    def release_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> None:
        """Release a named advisory lock inside a transaction.

        If *holder* is given the lock is only released when held by it.
        """
        if holder is not None:
            conn.execute(
                "DELETE FROM locks WHERE name = ? AND holder = ?",
                (name, holder),
            )
        else:
            conn.execute(
                "DELETE FROM locks WHERE name = ?",
                (name,),
            )

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def backup(self) -> Path:
        """Create a timestamped backup of the database.

        Old backups beyond the configured retention count are deleted.

        Returns
        -------
        Path
            Filesystem path of the newly created backup file.
        """
        return await anyio.to_thread.run_sync(self._backup_sync)

    def _backup_sync(self) -> Path:
        """Synchronous backup implementation."""
        if self._in_memory or not self._db_path.exists():
            log.debug("No database file to back up")
            return self._db_path

        try:
            self._backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable("backup", str(exc), identifier=str(self._backup_dir)) from exc

        timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self._backup_dir / f"hebbian_{timestamp}.db"

        # SQLite's online backup API gives a consistent snapshot.
        src = sqlite3.connect(str(self._db_path))
        dst = sqlite3.connect(str(backup_path))
        try:
            src.backup(dst)
            log.info("Backup created: %s", backup_path)
        finally:
            dst.close()
            src.close()

        self._prune_backups()
        return backup_path

    def _prune_backups(self) -> None:
        """Delete old backups, keeping only the most recent ``backup_count``."""
        backups = sorted(
            self._backup_dir.glob("hebbian_*.db"),
            key=lambda p: p.name,
            reverse=True,
        )
        for old in backups[self._backup_count :]:
            try:
                old.unlink()
                log.debug("Pruned old backup: %s", old.name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", old.name, exc)

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for all core tables in one round-trip."""
        rows = await self.execute(
            """
            SELECT 'neurons'            AS tbl, COUNT(*) AS cnt FROM neurons
            UNION ALL
            SELECT 'synapses',                   COUNT(*)        FROM synapses
            UNION ALL
            SELECT 'access_log',                 COUNT(*)        FROM access_log
            UNION ALL
            SELECT 'sessions',                   COUNT(*)        FROM sessions
            UNION ALL
            SELECT 'consolidation_log',          COUNT(*)        FROM consolidation_log
            """
        )
        return {row["tbl"]: row["cnt"] for row in rows}

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads.

        For an in-memory store this discards every row.  Worker threads drop
        their stale handles lazily, and :meth:`initialize` reopens the store.
        """
        self._closed = True
        self._generation += 1
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        self._shared_conn = None
        self._initialized = False
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
