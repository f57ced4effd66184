"""Synapse records, Hebbian reinforcement, and decay for the memory engine.

A **synapse** is a weighted connection between two neurons that have been
co-activated.  Its ``weight`` lives in ``[0, 1]`` and evolves through a
saturating Hebbian update (``w += rate * (1 - w)``), time-based decay and
pruning.

Directionality is a configuration choice (``learning.directed``):

- **undirected** (default) -- one row per unordered pair, stored with
  ``source_id < target_id``; traversal goes both ways.
- **directed** -- one row per ordered pair, ``earlier -> later``; traversal
  follows outgoing edges only.

This module provides:

* :class:`Synapse` -- dataclass mapping 1:1 to a row in ``synapses``.
* :class:`SynapseManager` -- async lookups plus ``*_in_conn`` helpers that
  run inside a caller-owned transaction (see
  :meth:`~hebbian_memory.storage.Storage.execute_transaction`), so learning
  and maintenance passes can combine several updates atomically.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from hebbian_memory.config import HebbianConfig
from hebbian_memory.storage import Storage, days_between, utcnow_iso

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Synapse dataclass
# ---------------------------------------------------------------------------


@dataclass
class Synapse:
    """In-memory representation of a single synapse row.

    Parameters
    ----------
    source_id:
        Lower neuron id (undirected) or the earlier neuron (directed).
    target_id:
        Higher neuron id (undirected) or the later neuron (directed).
    weight:
        Connection strength in ``[0, 1]``.
    co_activation_count:
        How many times the pair has been reinforced.
    last_reinforced_at:
        ISO-8601 timestamp of the most recent reinforcement.
    last_decayed_at:
        ISO-8601 timestamp of the most recent decay pass, or ``None``.
    created_at:
        ISO-8601 timestamp when the synapse was first created.
    """

    source_id: int
    target_id: int
    weight: float
    co_activation_count: int
    last_reinforced_at: str
    last_decayed_at: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: Any) -> Synapse:
        """Create a :class:`Synapse` from a :class:`sqlite3.Row`."""
        return cls(
            source_id=row["source_id"],
            target_id=row["target_id"],
            weight=row["weight"],
            co_activation_count=row["co_activation_count"],
            last_reinforced_at=row["last_reinforced_at"],
            last_decayed_at=row["last_decayed_at"],
            created_at=row["created_at"],
        )

    def other(self, neuron_id: int) -> int:
        """The endpoint opposite *neuron_id*."""
        return self.target_id if neuron_id == self.source_id else self.source_id

    def to_dict(self) -> dict[str, Any]:
        """Serialise the synapse to a JSON-safe dict."""
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "weight": self.weight,
            "co_activation_count": self.co_activation_count,
            "last_reinforced_at": self.last_reinforced_at,
            "last_decayed_at": self.last_decayed_at,
            "created_at": self.created_at,
        }


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

# Saturating Hebbian upsert.  The read-modify-write happens inside SQLite so
# a concurrent increment from another process is never lost.
_REINFORCE_SQL = """
INSERT INTO synapses
    (source_id, target_id, weight, co_activation_count,
     last_reinforced_at, created_at)
VALUES (:src, :tgt, MIN(1.0, :rate), 1, :now, :now)
ON CONFLICT(source_id, target_id) DO UPDATE SET
    weight = MIN(1.0, weight + :rate * (1.0 - weight)),
    co_activation_count = co_activation_count + 1,
    last_reinforced_at = excluded.last_reinforced_at
RETURNING weight
"""

# Explicit positive signal: the result is at least :floor.
_REINFORCE_FLOOR_SQL = """
INSERT INTO synapses
    (source_id, target_id, weight, co_activation_count,
     last_reinforced_at, created_at)
VALUES (:src, :tgt, MIN(1.0, :floor), 1, :now, :now)
ON CONFLICT(source_id, target_id) DO UPDATE SET
    weight = MIN(1.0, MAX(:floor, weight + :floor * (1.0 - weight))),
    co_activation_count = co_activation_count + 1,
    last_reinforced_at = excluded.last_reinforced_at
RETURNING weight
"""


# ---------------------------------------------------------------------------
# Synapse manager
# ---------------------------------------------------------------------------


class SynapseManager:
    """Synapse lookups, Hebbian reinforcement, decay and pruning.

    Parameters
    ----------
    storage:
        An initialised :class:`~hebbian_memory.storage.Storage` instance.
    config:
        Overrides the configuration carried by *storage*.
    """

    def __init__(self, storage: Storage, config: HebbianConfig | None = None) -> None:
        self._storage = storage
        self._cfg = config or storage.config
        self._directed = self._cfg.learning.directed

    @property
    def directed(self) -> bool:
        return self._directed

    def canonical(self, first_id: int, second_id: int) -> tuple[int, int]:
        """Storage key for the edge between *first_id* and *second_id*.

        Undirected mode orders the pair so both call orders hit one row;
        directed mode keeps ``first -> second``.
        """
        if self._directed:
            return (first_id, second_id)
        return (min(first_id, second_id), max(first_id, second_id))

    # ------------------------------------------------------------------
    # In-transaction writes
    # ------------------------------------------------------------------

    def reinforce_in_conn(
        self,
        conn: sqlite3.Connection,
        first_id: int,
        second_id: int,
        rate: float,
        now: str | None = None,
    ) -> float:
        """Create or strengthen the synapse between two neurons.

        New synapses start at ``rate``; existing ones move toward ``1.0`` by
        ``rate * (1 - weight)``.  Self-links are ignored.

        Returns
        -------
        float
            The post-update weight (``0.0`` for a self-link).
        """
        if first_id == second_id:
            return 0.0
        src, tgt = self.canonical(first_id, second_id)
        row = conn.execute(
            _REINFORCE_SQL,
            {"src": src, "tgt": tgt, "rate": rate, "now": now or utcnow_iso()},
        ).fetchone()
        return row[0]

    def reinforce_floor_in_conn(
        self,
        conn: sqlite3.Connection,
        first_id: int,
        second_id: int,
        floor: float,
        now: str | None = None,
    ) -> float:
        """Strengthen a synapse to at least *floor* (explicit positive signal)."""
        if first_id == second_id:
            return 0.0
        src, tgt = self.canonical(first_id, second_id)
        row = conn.execute(
            _REINFORCE_FLOOR_SQL,
            {"src": src, "tgt": tgt, "floor": floor, "now": now or utcnow_iso()},
        ).fetchone()
        return row[0]

    def degrees_in_conn(
        self,
        conn: sqlite3.Connection,
        neuron_ids: list[int],
    ) -> dict[int, int]:
        """Synapse degree of each neuron, read inside the current transaction."""
        if not neuron_ids:
            return {}
        placeholders = ",".join("?" for _ in neuron_ids)
        counts = {nid: 0 for nid in neuron_ids}
        for row in conn.execute(
            f"SELECT source_id, COUNT(*) FROM synapses "
            f"WHERE source_id IN ({placeholders}) GROUP BY source_id",
            tuple(neuron_ids),
        ).fetchall():
            counts[row[0]] += row[1]
        if not self._directed:
            for row in conn.execute(
                f"SELECT target_id, COUNT(*) FROM synapses "
                f"WHERE target_id IN ({placeholders}) GROUP BY target_id",
                tuple(neuron_ids),
            ).fetchall():
                counts[row[0]] += row[1]
        return counts

    def weight_in_conn(
        self,
        conn: sqlite3.Connection,
        first_id: int,
        second_id: int,
    ) -> float | None:
        """Current weight of the edge, or ``None`` when absent."""
        src, tgt = self.canonical(first_id, second_id)
        row = conn.execute(
            "SELECT weight FROM synapses WHERE source_id = ? AND target_id = ?",
            (src, tgt),
        ).fetchone()
        return None if row is None else row[0]

    def decay_in_conn(
        self,
        conn: sqlite3.Connection,
        now: datetime,
    ) -> int:
        """Apply time-based exponential decay to every synapse.

        ``weight *= (1 - synapse_decay_rate) ** days`` where *days* is the
        fractional idle time since the later of ``last_reinforced_at`` and
        ``last_decayed_at``, so consecutive passes never double-count time.

        Returns
        -------
        int
            Number of synapses whose weight changed.
        """
        keep = 1.0 - self._cfg.decay.synapse_decay_rate
        stamp = now.isoformat(timespec="microseconds")
        rows = conn.execute(
            "SELECT source_id, target_id, weight, last_reinforced_at, last_decayed_at "
            "FROM synapses"
        ).fetchall()

        updates: list[tuple[float, str, int, int]] = []
        for row in rows:
            since = max(
                row["last_reinforced_at"] or "",
                row["last_decayed_at"] or "",
            )
            days = days_between(since, now)
            if days <= 0.0:
                continue
            new_weight = max(0.0, min(1.0, row["weight"] * keep**days))
            if new_weight < row["weight"]:
                updates.append((new_weight, stamp, row["source_id"], row["target_id"]))

        if updates:
            conn.executemany(
                "UPDATE synapses SET weight = ?, last_decayed_at = ? "
                "WHERE source_id = ? AND target_id = ?",
                updates,
            )
        return len(updates)

    def prune_in_conn(
        self,
        conn: sqlite3.Connection,
        threshold: float | None = None,
    ) -> int:
        """Delete synapses weaker than *threshold*; return how many."""
        if threshold is None:
            threshold = self._cfg.decay.prune_threshold
        cursor = conn.execute("DELETE FROM synapses WHERE weight < ?", (threshold,))
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Async reads
    # ------------------------------------------------------------------

    async def get_between(self, first_id: int, second_id: int) -> Synapse | None:
        """The synapse joining two neurons, or ``None``."""
        src, tgt = self.canonical(first_id, second_id)
        rows = await self._storage.execute(
            "SELECT * FROM synapses WHERE source_id = ? AND target_id = ?",
            (src, tgt),
        )
        return Synapse.from_row(rows[0]) if rows else None

    async def get_neighbors(
        self,
        neuron_id: int,
        min_weight: float = 0.0,
        limit: int | None = None,
    ) -> list[tuple[int, Synapse]]:
        """Neighbours of one neuron as ``(neighbour_id, synapse)``, strongest first."""
        batch = await self.get_neighbors_batch([neuron_id], min_weight=min_weight)
        neighbours = batch.get(neuron_id, [])
        return neighbours[:limit] if limit is not None else neighbours

    async def get_neighbors_batch(
        self,
        neuron_ids: list[int],
        min_weight: float = 0.0,
    ) -> dict[int, list[tuple[int, Synapse]]]:
        """Batch-fetch neighbours for several neurons in a single query.

        Avoids one SQL round-trip per frontier neuron during spreading
        activation.

        - Undirected mode: a synapse is adjacent to both endpoints.
        - Directed mode: only outgoing synapses (``source_id``) count.

        Parameters
        ----------
        neuron_ids:
            Neurons whose neighbours to fetch.  An empty list returns ``{}``.
        min_weight:
            Minimum synapse weight (inclusive).

        Returns
        -------
        dict[int, list[tuple[int, Synapse]]]
            Every requested id maps to ``(neighbour_id, synapse)`` pairs
            ordered by weight descending, then neighbour id ascending.
        """
        if not neuron_ids:
            return {}

        placeholders = ",".join("?" for _ in neuron_ids)
        if self._directed:
            where = f"source_id IN ({placeholders})"
            params: tuple = (min_weight, *neuron_ids)
        else:
            where = f"(source_id IN ({placeholders}) OR target_id IN ({placeholders}))"
            params = (min_weight, *neuron_ids, *neuron_ids)

        rows = await self._storage.execute(
            f"SELECT * FROM synapses WHERE weight >= ? AND {where} "
            f"ORDER BY weight DESC, source_id ASC, target_id ASC",
            params,
        )

        result: dict[int, list[tuple[int, Synapse]]] = {nid: [] for nid in neuron_ids}
        wanted = set(neuron_ids)
        for row in rows:
            syn = Synapse.from_row(row)
            if syn.source_id in wanted:
                result[syn.source_id].append((syn.target_id, syn))
            if not self._directed and syn.target_id in wanted:
                result[syn.target_id].append((syn.source_id, syn))

        for neighbours in result.values():
            neighbours.sort(key=lambda pair: (-pair[1].weight, pair[0]))
        return result

    async def degrees(self, neuron_ids: list[int]) -> dict[int, int]:
        """Synapse degree of each neuron (outgoing only in directed mode)."""
        if not neuron_ids:
            return {}
        placeholders = ",".join("?" for _ in neuron_ids)
        counts = {nid: 0 for nid in neuron_ids}
        rows = await self._storage.execute(
            f"SELECT source_id AS nid, COUNT(*) AS c FROM synapses "
            f"WHERE source_id IN ({placeholders}) GROUP BY source_id",
            tuple(neuron_ids),
        )
        for row in rows:
            counts[row["nid"]] += row["c"]
        if not self._directed:
            rows = await self._storage.execute(
                f"SELECT target_id AS nid, COUNT(*) AS c FROM synapses "
                f"WHERE target_id IN ({placeholders}) GROUP BY target_id",
                tuple(neuron_ids),
            )
            for row in rows:
                counts[row["nid"]] += row["c"]
        return counts

    async def count(self) -> int:
        rows = await self._storage.execute("SELECT COUNT(*) AS c FROM synapses")
        return rows[0]["c"]

    # ------------------------------------------------------------------
    # Standalone maintenance
    # ------------------------------------------------------------------

    async def prune_weak(self, threshold: float | None = None) -> int:
        """Delete synapses weaker than *threshold* in their own transaction."""
        def _do_prune(conn: sqlite3.Connection) -> int:
            return self.prune_in_conn(conn, threshold)

        pruned = await self._storage.execute_transaction(_do_prune, operation="prune_weak")
        if pruned:
            log.info("Pruned %d weak synapses", pruned)
        return pruned

