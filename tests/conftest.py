"""Shared fixtures and helpers for the hebbian_memory test suite."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from hebbian_memory.config import HebbianConfig
from hebbian_memory.engine import HebbianEngine
from hebbian_memory.storage import Storage, serialize_embedding


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path: Path) -> HebbianConfig:
    """Default configuration pointed entirely at ``tmp_path``.

    Tests never touch the user's database at ``~/.hebbian/memory.db``.
    """
    return HebbianConfig(
        db_path=tmp_path / "test.db",
        backup_dir=tmp_path / "backups",
    )


@pytest.fixture
async def storage(config: HebbianConfig) -> Storage:
    """Provide an initialized file-backed Storage in a temp directory."""
    s = Storage(config.db_path, config=config)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
async def memory_storage(config: HebbianConfig) -> Storage:
    """Provide an initialized ephemeral (``:memory:``) Storage."""
    s = Storage.in_memory(config=config)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
async def engine(storage: Storage) -> HebbianEngine:
    """A HebbianEngine bound to the temp store and a fixed session."""
    return HebbianEngine(storage, session_id="test-session")


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL insertion bypassing managers
# ---------------------------------------------------------------------------


def ago(days: float = 0.0, hours: float = 0.0) -> str:
    """ISO-8601 UTC timestamp *days* and *hours* in the past."""
    moment = datetime.now(tz=timezone.utc) - timedelta(days=days, hours=hours)
    return moment.isoformat(timespec="microseconds")


async def insert_neuron(
    storage: Storage,
    path: str,
    neuron_type: str = "file",
    access_count: int = 1,
    myelination: float = 0.1,
    contexts: list[str] | None = None,
    last_accessed_at: str | None = None,
    created_at: str | None = None,
    embedding: list[float] | None = None,
) -> int:
    """Insert a neuron directly via SQL, bypassing the learning engine.

    Returns the auto-generated neuron ID.
    """
    now = ago()
    return await storage.execute_write(
        """
        INSERT INTO neurons
            (path, type, access_count, myelination, contexts, embedding,
             created_at, last_accessed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            path,
            neuron_type,
            access_count,
            myelination,
            json.dumps(contexts or []),
            serialize_embedding(embedding) if embedding else None,
            created_at or last_accessed_at or now,
            last_accessed_at or now,
        ),
    )


async def insert_synapse(
    storage: Storage,
    source_id: int,
    target_id: int,
    weight: float = 0.5,
    co_activation_count: int = 1,
    last_reinforced_at: str | None = None,
    directed: bool = False,
) -> None:
    """Insert a synapse directly via SQL.

    Undirected pairs are stored in canonical ``(low, high)`` order unless
    *directed* is set.
    """
    if not directed:
        source_id, target_id = min(source_id, target_id), max(source_id, target_id)
    stamp = last_reinforced_at or ago()
    await storage.execute_write(
        """
        INSERT INTO synapses
            (source_id, target_id, weight, co_activation_count,
             last_reinforced_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (source_id, target_id, weight, co_activation_count, stamp, stamp),
    )


async def insert_access(
    storage: Storage,
    neuron_id: int,
    session_id: str,
    access_order: int,
    accessed_at: str | None = None,
    query: str | None = None,
) -> int:
    """Append an ``access_log`` row directly via SQL."""
    return await storage.execute_write(
        """
        INSERT INTO access_log
            (neuron_id, session_id, query, token_cost, access_order, accessed_at)
        VALUES (?, ?, ?, 0, ?, ?)
        """,
        (neuron_id, session_id, query, access_order, accessed_at or ago()),
    )


async def get_weight(
    storage: Storage,
    first_id: int,
    second_id: int,
    directed: bool = False,
) -> float | None:
    """Weight of the synapse between two neurons, or ``None``."""
    if not directed:
        first_id, second_id = min(first_id, second_id), max(first_id, second_id)
    rows = await storage.execute(
        "SELECT weight FROM synapses WHERE source_id = ? AND target_id = ?",
        (first_id, second_id),
    )
    return rows[0]["weight"] if rows else None


async def count_synapses(
    storage: Storage,
    source_id: int | None = None,
    target_id: int | None = None,
) -> int:
    """Count synapses matching the given filters."""
    clauses: list[str] = []
    params: list[Any] = []

    if source_id is not None:
        clauses.append("source_id = ?")
        params.append(source_id)
    if target_id is not None:
        clauses.append("target_id = ?")
        params.append(target_id)

    where = " AND ".join(clauses) if clauses else "1=1"
    rows = await storage.execute(
        f"SELECT COUNT(*) AS cnt FROM synapses WHERE {where}",
        tuple(params),
    )
    return rows[0]["cnt"]


async def age_access_log(storage: Storage, days: float = 0.0, hours: float = 0.0) -> None:
    """Push every ``access_log`` row back in time."""
    await storage.execute_write(
        "UPDATE access_log SET accessed_at = ?", (ago(days=days, hours=hours),)
    )
