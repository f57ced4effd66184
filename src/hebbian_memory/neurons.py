"""Neuron records and neuron-level queries for the Hebbian memory engine.

A **neuron** is one named, typed memory unit: a file path, a tool name, a
canonical error signature or a semantic label.  Each carries an
``access_count`` and a ``myelination`` strength in ``[0, 1]`` that grows
with repeated use and fades with disuse.

This module provides:

* :class:`Neuron` -- a dataclass mapping 1:1 to a row in the ``neurons``
  table, with conversion helpers.
* :class:`NeuronManager` -- async read queries and embedding updates.
  Reinforcement itself lives in :mod:`hebbian_memory.learning` because it
  must share a transaction with synapse updates.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from hebbian_memory.config import HebbianConfig
from hebbian_memory.exceptions import ValidationError
from hebbian_memory.storage import (
    Storage,
    days_between,
    deserialize_embedding,
    serialize_embedding,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

NEURON_TYPES: tuple[str, ...] = ("file", "tool", "error", "semantic")
"""Allowed values for the ``neurons.type`` column."""

# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def validate_path(path: Any, field_name: str = "path") -> str:
    """Return *path* stripped, raising :class:`ValidationError` when empty."""
    if not isinstance(path, str) or not path.strip():
        raise ValidationError(field_name, "must be a non-empty string", path)
    return path.strip()


def validate_neuron_type(neuron_type: Any, field_name: str = "type") -> str:
    """Raise :class:`ValidationError` if *neuron_type* is not in :data:`NEURON_TYPES`."""
    if neuron_type not in NEURON_TYPES:
        raise ValidationError(
            field_name,
            f"must be one of: {', '.join(NEURON_TYPES)}",
            neuron_type,
        )
    return neuron_type


def validate_embedding(vector: Any, field_name: str = "embedding") -> list[float]:
    """Return *vector* as a list of floats; reject empty or non-finite input."""
    if isinstance(vector, (str, bytes)) or not hasattr(vector, "__iter__"):
        raise ValidationError(field_name, "must be a sequence of numbers", vector)
    try:
        values = [float(v) for v in vector]
    except (TypeError, ValueError) as exc:
        raise ValidationError(field_name, "must be a sequence of numbers", vector) from exc
    if not values:
        raise ValidationError(field_name, "must not be empty", vector)
    if not all(math.isfinite(v) for v in values):
        raise ValidationError(field_name, "must contain only finite numbers", vector)
    return values


# ---------------------------------------------------------------------------
# Token estimates
# ---------------------------------------------------------------------------


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    """Rough token count for *text* (about ``chars_per_token`` chars each).

    Never returns less than 1 so every result has a non-zero cost.
    """
    return max(1, len(text) // max(1, chars_per_token))


def neuron_token_cost(
    neuron_type: str,
    path: str,
    contexts: list[str],
    config: HebbianConfig,
) -> int:
    """Tokens a caller would spend re-discovering this neuron's content.

    Files cost a full read, tools a search; error and semantic neurons are
    sized from their own text.
    """
    tokens = config.tokens
    if neuron_type == "file":
        return tokens.tokens_per_file_read
    if neuron_type == "tool":
        return tokens.tokens_per_search
    text = " ".join([path, *contexts])
    return estimate_tokens(text, tokens.chars_per_token)


# ---------------------------------------------------------------------------
# Neuron dataclass
# ---------------------------------------------------------------------------


@dataclass
class Neuron:
    """In-memory representation of a single neuron row.

    Parameters
    ----------
    id:
        Auto-incremented surrogate key.
    path:
        Identifier: file path, tool name, error signature or semantic label.
    type:
        One of :data:`NEURON_TYPES`.
    access_count:
        Number of times the neuron was recorded.  Never decreases.
    myelination:
        Reinforcement strength in ``[0, 1]``.
    contexts:
        Most recent context strings, oldest first.
    created_at:
        ISO-8601 creation timestamp.
    last_accessed_at:
        ISO-8601 timestamp of the most recent ``record``.
    last_decayed_at:
        ISO-8601 timestamp of the last decay pass that touched this neuron.
    embedding:
        Optional precomputed vector used for similarity seeding.
    """

    id: int
    path: str
    type: str
    access_count: int
    myelination: float
    contexts: list[str] = field(default_factory=list)
    created_at: str = ""
    last_accessed_at: str | None = None
    last_decayed_at: str | None = None
    embedding: list[float] | None = None

    @classmethod
    def from_row(cls, row: Any) -> Neuron:
        """Create a :class:`Neuron` from a :class:`sqlite3.Row`.

        The ``contexts`` column is stored as a JSON array; a malformed value
        is treated as an empty list rather than failing the whole read.
        """
        raw_contexts = row["contexts"]
        try:
            contexts = json.loads(raw_contexts) if raw_contexts else []
        except (json.JSONDecodeError, TypeError):
            log.warning("Neuron %s has unreadable contexts; treating as empty", row["id"])
            contexts = []
        if not isinstance(contexts, list):
            contexts = []

        blob = row["embedding"]
        return cls(
            id=row["id"],
            path=row["path"],
            type=row["type"],
            access_count=row["access_count"],
            myelination=row["myelination"],
            contexts=[str(c) for c in contexts],
            created_at=row["created_at"],
            last_accessed_at=row["last_accessed_at"],
            last_decayed_at=row["last_decayed_at"],
            embedding=deserialize_embedding(blob) if blob else None,
        )

    @property
    def key(self) -> tuple[str, str]:
        """The natural identity ``(type, path)``."""
        return (self.type, self.path)

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-safe dict.  The raw embedding is omitted."""
        return {
            "id": self.id,
            "path": self.path,
            "type": self.type,
            "access_count": self.access_count,
            "myelination": self.myelination,
            "contexts": list(self.contexts),
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "has_embedding": self.embedding is not None,
        }


@dataclass
class StaleNeuron:
    """A once-reinforced file neuron that has gone idle."""

    neuron: Neuron
    days_since_access: int
    projected_myelination: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "neuron": self.neuron.to_dict(),
            "days_since_access": self.days_since_access,
            "projected_myelination": self.projected_myelination,
        }


@dataclass
class HubInfo:
    """A highly connected neuron and its strongest connections."""

    neuron: Neuron
    degree: int
    top_connections: list[tuple[Neuron, float]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "neuron": self.neuron.to_dict(),
            "degree": self.degree,
            "top_connections": [
                {"neuron": n.to_dict(), "weight": w} for n, w in self.top_connections
            ],
        }


# ---------------------------------------------------------------------------
# Neuron manager
# ---------------------------------------------------------------------------


class NeuronManager:
    """Async read access to neurons plus embedding maintenance.

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

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(self, neuron_id: int) -> Neuron | None:
        """Return the neuron with *neuron_id*, or ``None``."""
        rows = await self._storage.execute(
            "SELECT * FROM neurons WHERE id = ?", (neuron_id,)
        )
        return Neuron.from_row(rows[0]) if rows else None

    async def get_by_key(self, path: str, neuron_type: str) -> Neuron | None:
        """Return the neuron identified by ``(type, path)``, or ``None``."""
        path = validate_path(path)
        validate_neuron_type(neuron_type)
        rows = await self._storage.execute(
            "SELECT * FROM neurons WHERE type = ? AND path = ?",
            (neuron_type, path),
        )
        return Neuron.from_row(rows[0]) if rows else None

    async def get_batch(self, neuron_ids: list[int]) -> dict[int, Neuron]:
        """Fetch several neurons in one round-trip, keyed by id."""
        if not neuron_ids:
            return {}
        placeholders = ",".join("?" for _ in neuron_ids)
        rows = await self._storage.execute(
            f"SELECT * FROM neurons WHERE id IN ({placeholders})",
            tuple(neuron_ids),
        )
        return {row["id"]: Neuron.from_row(row) for row in rows}

    async def list_by_type(self, neuron_type: str) -> list[Neuron]:
        """Every neuron of *neuron_type*, strongest first."""
        validate_neuron_type(neuron_type)
        rows = await self._storage.execute(
            "SELECT * FROM neurons WHERE type = ? ORDER BY myelination DESC, path ASC",
            (neuron_type,),
        )
        return [Neuron.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def set_embedding(
        self,
        path: str,
        neuron_type: str,
        vector: list[float],
    ) -> Neuron | None:
        """Attach a precomputed embedding to an existing neuron.

        Embeddings are produced outside the engine; this only stores them.

        Returns
        -------
        Neuron | None
            The updated neuron, or ``None`` when no such neuron exists.
        """
        path = validate_path(path)
        validate_neuron_type(neuron_type)
        values = validate_embedding(vector)
        rows = await self._storage.execute_write_returning(
            "UPDATE neurons SET embedding = ? WHERE type = ? AND path = ? RETURNING *",
            (serialize_embedding(values), neuron_type, path),
        )
        if not rows:
            log.debug("set_embedding: no neuron for %s:%s", neuron_type, path)
            return None
        return Neuron.from_row(rows[0])

    async def embedding_coverage(self) -> dict[str, Any]:
        """Share of neurons that carry an embedding.

        Returns
        -------
        dict
            ``embedded``, ``total`` and ``pct`` (0-100, ``0`` on an empty store).
        """
        rows = await self._storage.execute(
            "SELECT COUNT(*) AS total, "
            "COALESCE(SUM(CASE WHEN embedding IS NOT NULL THEN 1 ELSE 0 END), 0) AS embedded "
            "FROM neurons"
        )
        total = rows[0]["total"]
        embedded = rows[0]["embedded"]
        return {
            "embedded": embedded,
            "total": total,
            "pct": (embedded / total) * 100 if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def superhighways(self, min_myelination: float | None = None) -> list[Neuron]:
        """Neurons at or above *min_myelination*, strongest first."""
        threshold = (
            self._cfg.tokens.superhighway_threshold
            if min_myelination is None
            else min_myelination
        )
        rows = await self._storage.execute(
            "SELECT * FROM neurons WHERE myelination >= ? "
            "ORDER BY myelination DESC, path ASC",
            (threshold,),
        )
        return [Neuron.from_row(row) for row in rows]

    async def hubs(self, limit: int = 10, connections: int = 5) -> list[HubInfo]:
        """The *limit* highest-degree neurons with their strongest links."""
        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            raise ValidationError("limit", "must be a positive integer", limit)

        degree_rows = await self._storage.execute(
            """
            SELECT nid, COUNT(*) AS degree FROM (
                SELECT source_id AS nid FROM synapses
                UNION ALL
                SELECT target_id AS nid FROM synapses
            )
            GROUP BY nid
            ORDER BY degree DESC, nid ASC
            LIMIT ?
            """,
            (limit,),
        )
        if not degree_rows:
            return []

        hub_ids = [row["nid"] for row in degree_rows]
        neurons = await self.get_batch(hub_ids)

        hubs: list[HubInfo] = []
        for row in degree_rows:
            hub = neurons.get(row["nid"])
            if hub is None:
                continue
            conn_rows = await self._storage.execute(
                """
                SELECT n.*, s.weight AS link_weight
                FROM synapses s
                JOIN neurons n
                  ON n.id = CASE WHEN s.source_id = ? THEN s.target_id ELSE s.source_id END
                WHERE s.source_id = ? OR s.target_id = ?
                ORDER BY s.weight DESC, n.path ASC
                LIMIT ?
                """,
                (hub.id, hub.id, hub.id, connections),
            )
            hubs.append(
                HubInfo(
                    neuron=hub,
                    degree=row["degree"],
                    top_connections=[
                        (Neuron.from_row(r), r["link_weight"]) for r in conn_rows
                    ],
                )
            )
        return hubs

    async def stale(
        self,
        min_myelination: float = 0.1,
        days_inactive: int = 7,
    ) -> list[StaleNeuron]:
        """File neurons idle for at least *days_inactive* days.

        Each entry projects what its myelination will be after the idle
        period at the daily decay rate in ``tokens.stale_daily_decay``.
        """
        if days_inactive < 0:
            raise ValidationError("days_inactive", "must not be negative", days_inactive)

        rows = await self._storage.execute(
            "SELECT * FROM neurons "
            "WHERE type = 'file' AND myelination >= ? AND last_accessed_at IS NOT NULL "
            "ORDER BY myelination DESC, path ASC",
            (min_myelination,),
        )
        now = datetime.now(tz=timezone.utc)
        daily = self._cfg.tokens.stale_daily_decay

        stale: list[StaleNeuron] = []
        for row in rows:
            idle = days_between(row["last_accessed_at"], now)
            if idle < days_inactive:
                continue
            days = round(idle)
            projected = row["myelination"] * daily**days
            stale.append(
                StaleNeuron(
                    neuron=Neuron.from_row(row),
                    days_since_access=days,
                    projected_myelination=round(projected, 3),
                )
            )
        return stale

    async def counts(self) -> dict[str, Any]:
        """Aggregate counters used by :meth:`HebbianEngine.stats`."""
        rows = await self._storage.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM neurons) AS neuron_count,
                (SELECT COUNT(*) FROM synapses) AS synapse_count,
                (SELECT COUNT(*) FROM neurons WHERE myelination >= ?) AS superhighways,
                (SELECT COALESCE(AVG(myelination), 0.0) FROM neurons) AS avg_myelination,
                (SELECT COALESCE(SUM(access_count), 0) FROM neurons) AS total_accesses,
                (SELECT COALESCE(SUM(tokens_saved), 0) FROM sessions) AS total_tokens_saved
            """,
            (self._cfg.tokens.superhighway_threshold,),
        )
        return dict(rows[0])

    async def access_profile(self) -> list[tuple[int, float]]:
        """``(access_count, myelination)`` for every neuron."""
        rows = await self._storage.execute(
            "SELECT access_count, myelination FROM neurons"
        )
        return [(row["access_count"], row["myelination"]) for row in rows]
