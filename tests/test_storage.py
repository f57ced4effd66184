"""Tests for the hebbian_memory storage layer.

All tests use a temporary database directory (via ``tmp_path``) so that no
real user data is affected.  The storage layer is pure SQLite; sqlite-vec
is optional and nothing here depends on it loading.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from hebbian_memory.config import HebbianConfig, StorageConfig
from hebbian_memory.engine import HebbianEngine
from hebbian_memory.exceptions import (
    StoreBusy,
    StoreCorrupt,
    StoreUnavailable,
)
from hebbian_memory.storage import (
    Storage,
    days_between,
    deserialize_embedding,
    parse_timestamp,
    serialize_embedding,
    utcnow_iso,
)
from tests.conftest import insert_neuron


# -----------------------------------------------------------------------
# 1. Initialization
# -----------------------------------------------------------------------


class TestInitialization:
    """Verify that Storage.initialize() sets up the database correctly."""

    async def test_creates_db_file(self, storage: Storage) -> None:
        """Database file must exist on disk after initialization."""
        assert storage.db_path.exists()

    async def test_creates_parent_directories(self, tmp_path: Path) -> None:
        """Nested parent directories are created automatically."""
        deep_path = tmp_path / "a" / "b" / "c" / "test.db"
        cfg = HebbianConfig(db_path=deep_path, backup_dir=tmp_path / "backups_deep")
        s = Storage(config=cfg)
        await s.initialize()
        assert deep_path.exists()
        await s.close()

    async def test_wal_mode_enabled(self, storage: Storage) -> None:
        """WAL journal mode must be set for concurrent read support."""
        rows = await storage.execute("PRAGMA journal_mode")
        assert rows[0][0] == "wal"

    async def test_foreign_keys_enabled(self, storage: Storage) -> None:
        rows = await storage.execute("PRAGMA foreign_keys")
        assert rows[0][0] == 1

    async def test_idempotent(self, storage: Storage) -> None:
        """Calling initialize() twice must not raise or lose rows."""
        await insert_neuron(storage, "src/a.py")
        await storage.initialize()
        rows = await storage.execute("SELECT COUNT(*) FROM neurons")
        assert rows[0][0] == 1

    async def test_vec_available_is_bool(self, storage: Storage) -> None:
        assert isinstance(storage.vec_available, bool)

    async def test_backup_on_init(self, storage: Storage, config: HebbianConfig) -> None:
        """A fresh store is backed up once during initialization."""
        backups = list(config.backup_dir.glob("hebbian_*.db"))
        assert len(backups) == 1

    async def test_context_manager(self, config: HebbianConfig) -> None:
        async with Storage(config=config) as s:
            counts = await s.table_counts()
            assert counts["neurons"] == 0
        assert s._initialized is False

    async def test_reopen_same_handle(self, config: HebbianConfig) -> None:
        """Closing and re-entering one Storage gives working connections again."""
        s = Storage(config=config)
        async with s:
            await HebbianEngine(s, session_id="s1").record("src/a.py")
        async with s:
            neuron = await HebbianEngine(s, session_id="s1").record("src/a.py")
            rows = await s.execute("SELECT COUNT(*) FROM neurons")
        assert neuron.access_count == 2
        assert rows[0][0] == 1

    async def test_use_after_close(self, config: HebbianConfig) -> None:
        s = Storage(config=config)
        await s.initialize()
        await s.close()
        with pytest.raises(StoreUnavailable) as excinfo:
            await s.execute("SELECT 1")
        assert excinfo.value.operation == "connect"
        with pytest.raises(StoreUnavailable):
            await s.execute_write("INSERT INTO sessions (id, started_at) VALUES ('s', 'x')")


# -----------------------------------------------------------------------
# 2. Schema
# -----------------------------------------------------------------------

_CORE_TABLES = {
    "neurons",
    "synapses",
    "access_log",
    "sessions",
    "consolidation_log",
    "locks",
    "recall_log",
}


class TestSchema:
    """Verify that all expected tables, indexes and constraints are present."""

    async def test_core_tables_exist(self, storage: Storage) -> None:
        rows = await storage.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        )
        names = {row["name"] for row in rows}
        assert _CORE_TABLES <= names

    async def test_indexes_created(self, storage: Storage) -> None:
        rows = await storage.execute(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND name LIKE 'idx_%'"
        )
        names = {row["name"] for row in rows}
        for expected in (
            "idx_neurons_type",
            "idx_neurons_myelination",
            "idx_synapses_source_weight",
            "idx_synapses_target_weight",
            "idx_access_log_session",
        ):
            assert expected in names, f"Missing index: {expected}"

    async def test_neuron_identity_unique(self, storage: Storage) -> None:
        """(type, path) is unique; the same path under another type is fine."""
        await insert_neuron(storage, "grep", "tool")
        await insert_neuron(storage, "grep", "semantic")
        with pytest.raises(sqlite3.IntegrityError):
            await insert_neuron(storage, "grep", "tool")

    async def test_neuron_type_checked(self, storage: Storage) -> None:
        with pytest.raises(sqlite3.IntegrityError):
            await insert_neuron(storage, "x", "folder")

    async def test_synapse_self_link_rejected(self, storage: Storage) -> None:
        nid = await insert_neuron(storage, "src/a.py")
        with pytest.raises(sqlite3.IntegrityError):
            await storage.execute_write(
                "INSERT INTO synapses (source_id, target_id, weight, "
                "last_reinforced_at, created_at) VALUES (?, ?, 0.5, 'x', 'x')",
                (nid, nid),
            )

    async def test_synapse_weight_range_checked(self, storage: Storage) -> None:
        a = await insert_neuron(storage, "src/a.py")
        b = await insert_neuron(storage, "src/b.py")
        with pytest.raises(sqlite3.IntegrityError):
            await storage.execute_write(
                "INSERT INTO synapses (source_id, target_id, weight, "
                "last_reinforced_at, created_at) VALUES (?, ?, 1.5, 'x', 'x')",
                (a, b),
            )

    async def test_cascade_delete(self, storage: Storage) -> None:
        """Deleting a neuron removes its synapses and access log rows."""
        a = await insert_neuron(storage, "src/a.py")
        b = await insert_neuron(storage, "src/b.py")
        await storage.execute_write(
            "INSERT INTO synapses (source_id, target_id, weight, "
            "last_reinforced_at, created_at) VALUES (?, ?, 0.5, 'x', 'x')",
            (a, b),
        )
        await storage.execute_write("DELETE FROM neurons WHERE id = ?", (a,))
        counts = await storage.table_counts()
        assert counts["synapses"] == 0

    async def test_migration_adds_missing_columns(self, tmp_path: Path) -> None:
        """A database from an older schema gains the migrated columns."""
        db_path = tmp_path / "old.db"
        conn = sqlite3.connect(str(db_path))
        conn.executescript(
            """
            CREATE TABLE sessions (
                id TEXT PRIMARY KEY,
                started_at TEXT NOT NULL,
                total_accesses INTEGER NOT NULL DEFAULT 0,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                tokens_saved INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        conn.commit()
        conn.close()

        cfg = HebbianConfig(db_path=db_path, backup_dir=tmp_path / "b", backup_on_init=False)
        s = Storage(config=cfg)
        await s.initialize()
        rows = await s.execute("PRAGMA table_info(sessions)")
        columns = {row[1] for row in rows}
        assert {"recalls", "last_active_at", "intent"} <= columns
        await s.close()


# -----------------------------------------------------------------------
# 3. Query execution and transactions
# -----------------------------------------------------------------------


class TestExecution:
    """execute / execute_write / execute_transaction semantics."""

    async def test_execute_write_returns_rowid(self, storage: Storage) -> None:
        first = await insert_neuron(storage, "src/a.py")
        second = await insert_neuron(storage, "src/b.py")
        assert second == first + 1

    async def test_execute_write_returning(self, storage: Storage) -> None:
        nid = await insert_neuron(storage, "src/a.py")
        rows = await storage.execute_write_returning(
            "UPDATE neurons SET access_count = 7 WHERE id = ? RETURNING access_count",
            (nid,),
        )
        assert rows[0]["access_count"] == 7

    async def test_execute_many(self, storage: Storage) -> None:
        await storage.execute_many(
            "INSERT INTO sessions (id, started_at) VALUES (?, ?)",
            [("s1", utcnow_iso()), ("s2", utcnow_iso())],
        )
        counts = await storage.table_counts()
        assert counts["sessions"] == 2

    async def test_transaction_commits(self, storage: Storage) -> None:
        def _two_inserts(conn: sqlite3.Connection) -> int:
            conn.execute("INSERT INTO sessions (id, started_at) VALUES ('a', 'x')")
            conn.execute("INSERT INTO sessions (id, started_at) VALUES ('b', 'x')")
            return 2

        assert await storage.execute_transaction(_two_inserts) == 2
        counts = await storage.table_counts()
        assert counts["sessions"] == 2

    async def test_transaction_rolls_back_on_error(self, storage: Storage) -> None:
        """A failing callback leaves the pre-state, never a partial write."""
        def _fail_halfway(conn: sqlite3.Connection) -> None:
            conn.execute("INSERT INTO sessions (id, started_at) VALUES ('a', 'x')")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await storage.execute_transaction(_fail_halfway)
        counts = await storage.table_counts()
        assert counts["sessions"] == 0

    async def test_table_counts_empty(self, storage: Storage) -> None:
        counts = await storage.table_counts()
        assert counts == {
            "neurons": 0,
            "synapses": 0,
            "access_log": 0,
            "sessions": 0,
            "consolidation_log": 0,
        }


# -----------------------------------------------------------------------
# 4. Contention and failure mapping
# -----------------------------------------------------------------------


class TestContention:
    """Lock contention is retried, then surfaces as StoreBusy."""

    async def test_store_busy_after_retries(self, tmp_path: Path) -> None:
        cfg = HebbianConfig(
            db_path=tmp_path / "busy.db",
            backup_dir=tmp_path / "backups",
            backup_on_init=False,
            storage=StorageConfig(
                busy_timeout_ms=50, busy_retries=2, busy_backoff_seconds=0.01
            ),
        )
        s = Storage(config=cfg)
        await s.initialize()

        # A second process-like connection holds the write lock.
        blocker = sqlite3.connect(str(cfg.db_path), isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(StoreBusy) as excinfo:
                await s.execute_write(
                    "INSERT INTO sessions (id, started_at) VALUES ('s', 'x')"
                )
            assert excinfo.value.attempts == 3
            assert excinfo.value.operation == "execute_write"
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        # Nothing was applied, and the store works again once the lock is gone.
        counts = await s.table_counts()
        assert counts["sessions"] == 0
        await s.execute_write("INSERT INTO sessions (id, started_at) VALUES ('s', 'x')")
        await s.close()

    async def test_corrupt_file(self, tmp_path: Path) -> None:
        db_path = tmp_path / "corrupt.db"
        db_path.write_bytes(b"definitely not a sqlite database " * 64)
        cfg = HebbianConfig(db_path=db_path, backup_dir=tmp_path / "b")
        s = Storage(config=cfg)
        with pytest.raises(StoreCorrupt):
            await s.initialize()
        await s.close()

    async def test_unavailable_directory(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        cfg = HebbianConfig(db_path=blocker / "memory.db", backup_dir=tmp_path / "b")
        s = Storage(config=cfg)
        with pytest.raises(StoreUnavailable):
            await s.initialize()


# -----------------------------------------------------------------------
# 5. Advisory locks
# -----------------------------------------------------------------------


class TestAdvisoryLocks:
    async def test_acquire_conflict_release(self, storage: Storage) -> None:
        def _first(conn: sqlite3.Connection) -> bool:
            return Storage.try_acquire_lock(conn, "job", "one")

        def _second(conn: sqlite3.Connection) -> bool:
            return Storage.try_acquire_lock(conn, "job", "two")

        def _release_wrong(conn: sqlite3.Connection) -> None:
            Storage.release_lock(conn, "job", "two")

        def _release(conn: sqlite3.Connection) -> None:
            Storage.release_lock(conn, "job", "one")

        assert await storage.execute_transaction(_first) is True
        assert await storage.execute_transaction(_second) is False
        await storage.execute_transaction(_release_wrong)
        assert await storage.execute_transaction(_second) is False
        await storage.execute_transaction(_release)
        assert await storage.execute_transaction(_second) is True

    async def test_stale_lock_reclaimed(self, storage: Storage) -> None:
        await storage.execute_write(
            "INSERT INTO locks (name, holder, acquired_at) "
            "VALUES ('job', 'ghost', datetime('now', '-1 hour'))"
        )

        def _take(conn: sqlite3.Connection) -> bool:
            return Storage.try_acquire_lock(conn, "job")

        assert await storage.execute_transaction(_take) is True


# -----------------------------------------------------------------------
# 6. Backups
# -----------------------------------------------------------------------


class TestBackups:
    async def test_backup_is_readable_copy(self, storage: Storage) -> None:
        await insert_neuron(storage, "src/a.py")
        path = await storage.backup()
        conn = sqlite3.connect(str(path))
        try:
            assert conn.execute("SELECT COUNT(*) FROM neurons").fetchone()[0] == 1
        finally:
            conn.close()

    async def test_retention(self, tmp_path: Path) -> None:
        cfg = HebbianConfig(
            db_path=tmp_path / "r.db", backup_dir=tmp_path / "backups", backup_count=2
        )
        s = Storage(config=cfg)
        await s.initialize()
        for _ in range(4):
            await s.backup()
        assert len(list(cfg.backup_dir.glob("hebbian_*.db"))) == 2
        await s.close()


# -----------------------------------------------------------------------
# 7. In-memory mode
# -----------------------------------------------------------------------


class TestInMemory:
    async def test_flags(self, memory_storage: Storage) -> None:
        assert memory_storage.in_memory_mode is True

    async def test_schema_and_rows_persist_within_store(self, memory_storage: Storage) -> None:
        nid = await insert_neuron(memory_storage, "src/a.py")
        rows = await memory_storage.execute("SELECT path FROM neurons WHERE id = ?", (nid,))
        assert rows[0]["path"] == "src/a.py"

    async def test_no_file_or_backup(self, memory_storage: Storage, config: HebbianConfig) -> None:
        assert not config.backup_dir.exists()
        assert await memory_storage.backup() == memory_storage.db_path

    async def test_transaction_rollback(self, memory_storage: Storage) -> None:
        def _fail(conn: sqlite3.Connection) -> None:
            conn.execute("INSERT INTO sessions (id, started_at) VALUES ('a', 'x')")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await memory_storage.execute_transaction(_fail)
        counts = await memory_storage.table_counts()
        assert counts["sessions"] == 0

    async def test_separate_stores_are_isolated(self, config: HebbianConfig) -> None:
        one = Storage.in_memory(config=config)
        two = Storage.in_memory(config=config)
        await one.initialize()
        await two.initialize()
        await insert_neuron(one, "src/a.py")
        assert (await two.table_counts())["neurons"] == 0
        await one.close()
        await two.close()


# -----------------------------------------------------------------------
# 8. Serialisation and timestamp helpers
# -----------------------------------------------------------------------


class TestHelpers:
    def test_embedding_roundtrip(self) -> None:
        vec = [0.5, -1.25, 3.0]
        blob = serialize_embedding(vec)
        assert len(blob) == 12
        assert deserialize_embedding(blob) == pytest.approx(vec)

    def test_utcnow_iso_fixed_width(self) -> None:
        stamp = utcnow_iso()
        assert stamp.endswith("+00:00")
        assert len(stamp) == len("2024-01-01T00:00:00.000000+00:00")

    def test_parse_naive_as_utc(self) -> None:
        parsed = parse_timestamp("2024-01-01 12:00:00")
        assert parsed is not None
        assert parsed.tzinfo is timezone.utc

    def test_parse_garbage(self) -> None:
        assert parse_timestamp("yesterday-ish") is None
        assert parse_timestamp(None) is None

    def test_days_between(self) -> None:
        now = datetime.now(tz=timezone.utc)
        earlier = (now - timedelta(days=2, hours=12)).isoformat()
        assert days_between(earlier, now) == pytest.approx(2.5)
        assert days_between(None, now) == 0.0
        assert days_between((now + timedelta(days=1)).isoformat(), now) == 0.0
