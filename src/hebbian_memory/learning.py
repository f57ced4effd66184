"""Hebbian learning: reinforcement of neurons and their co-activations.

Every access event passes through :meth:`LearningEngine.record`, which in a
single ``BEGIN IMMEDIATE`` transaction:

1. Upserts the neuron, bumping ``access_count`` and reinforcing
   ``myelination`` by the saturating rule
   ``m += myelin_rate * (myelin_max - m)``, approaching but never passing
   the ``myelin_max`` ceiling.
2. Pushes the query onto the neuron's bounded context list.
3. Wires the neuron to the session's co-activation window -- the most
   recent distinct neurons recorded in the same session within
   ``co_activation_seconds`` -- with a rate scaled by window position,
   error involvement and hub degree.
4. Appends an ``access_log`` row and bumps the session counters.

The window is read back from ``access_log`` rather than held in memory, so
several short-lived processes sharing a session id see each other's
accesses.

Usage::

    from hebbian_memory.learning import LearningEngine

    learner = LearningEngine(storage)
    neuron = await learner.record("src/api.py", "file", session_id="s1", query="auth bug")
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from hebbian_memory.config import HebbianConfig
from hebbian_memory.exceptions import ValidationError
from hebbian_memory.neurons import (
    Neuron,
    neuron_token_cost,
    validate_neuron_type,
    validate_path,
)
from hebbian_memory.storage import Storage
from hebbian_memory.synapses import SynapseManager

logger = logging.getLogger(__name__)


def push_context(contexts: list[str], context: str | None, cap: int) -> list[str]:
    """Append *context*, moving it to the end if present, keeping the newest *cap*."""
    if not context:
        return list(contexts)
    updated = [c for c in contexts if c != context]
    updated.append(context)
    return updated[-cap:] if cap > 0 else []


def _validate_query(query: object) -> str | None:
    if query is None:
        return None
    if not isinstance(query, str):
        raise ValidationError("query", "must be a string", query)
    return query.strip() or None


def validate_session_id(session_id: object) -> str:
    if not isinstance(session_id, str) or not session_id.strip():
        raise ValidationError("session_id", "must be a non-empty string", session_id)
    return session_id


class LearningEngine:
    """Applies the Hebbian update for each recorded access.

    Parameters
    ----------
    storage:
        An initialised :class:`~hebbian_memory.storage.Storage` instance.
    synapses:
        Shared :class:`~hebbian_memory.synapses.SynapseManager`; one is built
        when omitted.
    config:
        Overrides the configuration carried by *storage*.
    """

    def __init__(
        self,
        storage: Storage,
        synapses: SynapseManager | None = None,
        config: HebbianConfig | None = None,
    ) -> None:
        self._storage = storage
        self._cfg = config or storage.config
        self._synapses = synapses or SynapseManager(storage, self._cfg)

    async def record(
        self,
        path: str,
        neuron_type: str,
        session_id: str,
        query: str | None = None,
    ) -> Neuron:
        """Record one access and return the post-update neuron.

        Parameters
        ----------
        path:
            Neuron identifier (file path, tool name, error signature, label).
        neuron_type:
            One of :data:`~hebbian_memory.neurons.NEURON_TYPES`.
        session_id:
            Session whose co-activation window this access joins.
        query:
            Optional free-text context, kept on the neuron for keyword recall.

        Raises
        ------
        ValidationError
            On an empty path, unknown type or non-string query.  Nothing is
            written in that case.
        """
        path = validate_path(path)
        validate_neuron_type(neuron_type)
        query = _validate_query(query)
        session_id = validate_session_id(session_id)

        def _do_record(conn: sqlite3.Connection) -> Neuron:
            return self.record_in_conn(conn, path, neuron_type, session_id, query)

        neuron = await self._storage.execute_transaction(_do_record, operation="record")
        logger.debug(
            "record %s:%s access_count=%d myelination=%.4f",
            neuron.type,
            neuron.path,
            neuron.access_count,
            neuron.myelination,
        )
        return neuron

    # ------------------------------------------------------------------
    # In-transaction implementation
    # ------------------------------------------------------------------

    def record_in_conn(
        self,
        conn: sqlite3.Connection,
        path: str,
        neuron_type: str,
        session_id: str,
        query: str | None,
        now: datetime | None = None,
    ) -> Neuron:
        """Full record pipeline inside the caller's transaction.

        Exposed so the error-fix subsystem can record several neurons and
        wire them together atomically.
        """
        now = now or datetime.now(tz=timezone.utc)
        stamp = now.isoformat(timespec="microseconds")

        neuron_id, contexts = self._upsert_neuron(conn, path, neuron_type, query, stamp)
        self._co_activate(conn, neuron_id, neuron_type, session_id, now, stamp)

        token_cost = neuron_token_cost(neuron_type, path, contexts, self._cfg)
        access_order = self._bump_session(conn, session_id, token_cost, stamp)
        conn.execute(
            "INSERT INTO access_log "
            "(neuron_id, session_id, query, token_cost, access_order, accessed_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (neuron_id, session_id, query, token_cost, access_order, stamp),
        )

        row = conn.execute("SELECT * FROM neurons WHERE id = ?", (neuron_id,)).fetchone()
        return Neuron.from_row(row)

    def _upsert_neuron(
        self,
        conn: sqlite3.Connection,
        path: str,
        neuron_type: str,
        query: str | None,
        stamp: str,
    ) -> tuple[int, list[str]]:
        learn = self._cfg.learning
        row = conn.execute(
            "SELECT id, contexts FROM neurons WHERE type = ? AND path = ?",
            (neuron_type, path),
        ).fetchone()

        if row is None:
            contexts = push_context([], query, learn.context_cap)
            cursor = conn.execute(
                "INSERT INTO neurons "
                "(path, type, access_count, myelination, contexts, created_at, last_accessed_at) "
                "VALUES (?, ?, 1, ?, ?, ?, ?)",
                (
                    path,
                    neuron_type,
                    learn.myelin_seed,
                    json.dumps(contexts, ensure_ascii=False),
                    stamp,
                    stamp,
                ),
            )
            return cursor.lastrowid, contexts

        try:
            existing = json.loads(row["contexts"] or "[]")
        except json.JSONDecodeError:
            existing = []
        contexts = push_context(
            existing if isinstance(existing, list) else [], query, learn.context_cap
        )
        conn.execute(
            "UPDATE neurons SET "
            "access_count = access_count + 1, "
            "myelination = MIN(?, myelination + ? * (? - myelination)), "
            "contexts = ?, last_accessed_at = ? "
            "WHERE id = ?",
            (
                learn.myelin_max,
                learn.myelin_rate,
                learn.myelin_max,
                json.dumps(contexts, ensure_ascii=False),
                stamp,
                row["id"],
            ),
        )
        return row["id"], contexts

    def window_in_conn(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        exclude_id: int,
        now: datetime,
    ) -> list[tuple[int, str]]:
        """The session's co-activation window, oldest first.

        Returns up to ``co_activation_window`` distinct ``(neuron_id, type)``
        pairs recorded in *session_id* within ``co_activation_seconds``.
        """
        learn = self._cfg.learning
        since = (now - timedelta(seconds=learn.co_activation_seconds)).isoformat(
            timespec="microseconds"
        )
        rows = conn.execute(
            """
            SELECT a.neuron_id, n.type, MAX(a.access_order) AS last_order
            FROM access_log a
            JOIN neurons n ON n.id = a.neuron_id
            WHERE a.session_id = ? AND a.accessed_at >= ? AND a.neuron_id != ?
            GROUP BY a.neuron_id
            ORDER BY last_order DESC
            LIMIT ?
            """,
            (session_id, since, exclude_id, learn.co_activation_window),
        ).fetchall()
        return [(row["neuron_id"], row["type"]) for row in reversed(rows)]

    def _co_activate(
        self,
        conn: sqlite3.Connection,
        neuron_id: int,
        neuron_type: str,
        session_id: str,
        now: datetime,
        stamp: str,
    ) -> int:
        learn = self._cfg.learning
        window = self.window_in_conn(conn, session_id, neuron_id, now)
        if not window:
            return 0

        degrees = self._synapses.degrees_in_conn(
            conn, [neuron_id, *(nid for nid, _ in window)]
        )
        own_hub = degrees.get(neuron_id, 0) > learn.hub_penalty_threshold
        size = len(window)

        for position, (other_id, other_type) in enumerate(window):
            rate = learn.learning_rate * (position + 1) / size
            if neuron_type == "error" or other_type == "error":
                rate *= learn.error_learning_boost
            if own_hub or degrees.get(other_id, 0) > learn.hub_penalty_threshold:
                rate *= learn.hub_penalty_factor
            # Directed edges run from the earlier access to this one.
            self._synapses.reinforce_in_conn(conn, other_id, neuron_id, min(1.0, rate), stamp)
        return size

    @staticmethod
    def _bump_session(
        conn: sqlite3.Connection,
        session_id: str,
        token_cost: int,
        stamp: str,
    ) -> int:
        """Count the access against its session; return its access order."""
        row = conn.execute(
            """
            INSERT INTO sessions (id, started_at, last_active_at, total_accesses, tokens_used)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(id) DO UPDATE SET
                total_accesses = total_accesses + 1,
                tokens_used = tokens_used + excluded.tokens_used,
                last_active_at = excluded.last_active_at
            RETURNING total_accesses
            """,
            (session_id, stamp, stamp, token_cost),
        ).fetchone()
        return row[0]
