"""Decay, pruning, and sleep-replay consolidation for the Hebbian memory engine.

Two caller-triggered batch passes live here; neither runs on a timer.

:meth:`ConsolidationEngine.decay` -- homeostatic forgetting:

1. **Synapse decay** -- ``weight *= (1 - synapse_decay_rate) ** days``.
2. **Myelin decay** -- ``m = max(seed, m * (1 - myelin_decay_rate) ** days)``.
3. **Synapse pruning** -- delete synapses below ``prune_threshold``.
4. **Orphan pruning** -- delete idle error/semantic neurons left with no
   synapses.

:meth:`ConsolidationEngine.anti_recall` -- the negative signal: synapses of
neurons a session was shown by recall but never opened lose
``anti_recall_decay`` of their weight, down to ``anti_recall_floor``.

:meth:`ConsolidationEngine.consolidate` -- the heavier "sleep" pass:

1. **Shortcuts** -- A-B-C paths through a strong intermediary B reinforce a
   direct A-C synapse proportional to ``w_AB * w_BC``.
2. **Session replay** -- recent busy sessions are replayed through the
   co-activation window, gently strengthening existing synapses only.
3. **Cross-session patterns** -- pairs seen together in several sessions
   gain a weak synapse (or a bump when already weak).
4. **Semantic demotion** -- long-idle, never-reinforced semantic neurons
   without meaningful synapses are deleted.
5. **Homeostasis** -- dampen hyperactive neurons and rescale synapse
   weights when their average drifts too high.
6. **Episodic pruning** -- trim old ``access_log`` rows and forget idle
   sessions.
7. **Log** -- write a summary to ``consolidation_log``.

Each pass runs in a single transaction, so a crash leaves either the pre-
or the post-state.  Consolidation is additionally guarded by the
``consolidation`` advisory lock; a concurrent run returns a skipped result.

Usage::

    from hebbian_memory.consolidation import ConsolidationEngine

    engine = ConsolidationEngine(storage)
    decay = await engine.decay()
    summary = await engine.consolidate()
    print(decay.pruned_synapses, summary.shortcuts_created)
"""

from __future__ import annotations

import itertools
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from hebbian_memory.config import HebbianConfig
from hebbian_memory.learning import validate_session_id
from hebbian_memory.storage import Storage, days_between
from hebbian_memory.synapses import SynapseManager

logger = logging.getLogger(__name__)

_LOCK_NAME = "consolidation"

_FLOOR_EPSILON = 1e-9
"""Tolerance when comparing myelination against the seed floor."""


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class DecayResult:
    """Summary of a single decay pass.

    Attributes
    ----------
    pruned_synapses:
        Synapses deleted because their weight fell below the prune threshold.
    decayed_synapses:
        Synapses whose weight was reduced.
    decayed_neurons:
        Neurons whose myelination was reduced.
    pruned_neurons:
        Orphaned error/semantic neurons deleted.
    """

    pruned_synapses: int = 0
    decayed_synapses: int = 0
    decayed_neurons: int = 0
    pruned_neurons: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pruned_synapses": self.pruned_synapses,
            "decayed_synapses": self.decayed_synapses,
            "decayed_neurons": self.decayed_neurons,
            "pruned_neurons": self.pruned_neurons,
        }


@dataclass
class AntiRecallResult:
    """Summary of one anti-recall pass over a session.

    Attributes
    ----------
    weakened:
        Synapses whose weight was reduced.
    ignored:
        Paths of neurons the session was shown but never opened.
    """

    weakened: int = 0
    ignored: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"weakened": self.weakened, "ignored": list(self.ignored)}


@dataclass
class ConsolidationResult:
    """Summary of a single consolidation cycle.

    Attributes
    ----------
    shortcuts_created:
        New direct synapses created across a strong intermediary.
    shortcuts_reinforced:
        Existing direct synapses strengthened across a strong intermediary.
    sessions_replayed:
        Recent sessions replayed through the co-activation window.
    replay_strengthened:
        Synapse reinforcements applied during session replay.
    patterns_discovered:
        New weak synapses from cross-session co-occurrence.
    patterns_bumped:
        Weak existing synapses bumped by cross-session co-occurrence.
    semantic_demoted:
        Semantic neurons deleted for persistent inactivity.
    neurons_dampened:
        Hyperactive neurons whose myelination was dampened.
    synapses_scaled:
        Synapses rescaled because the average weight drifted too high.
    episodes_pruned:
        ``access_log`` rows removed by retention.
    sessions_pruned:
        ``sessions`` rows idle for longer than the retention window.
    skipped:
        ``True`` when another consolidation held the lock.
    details:
        Per-phase detail dicts for logging and debugging.
    """

    shortcuts_created: int = 0
    shortcuts_reinforced: int = 0
    sessions_replayed: int = 0
    replay_strengthened: int = 0
    patterns_discovered: int = 0
    patterns_bumped: int = 0
    semantic_demoted: int = 0
    neurons_dampened: int = 0
    synapses_scaled: int = 0
    episodes_pruned: int = 0
    sessions_pruned: int = 0
    skipped: bool = False
    details: list[dict[str, Any]] = field(default_factory=list)

    def counters(self) -> dict[str, int]:
        """Just the numeric counters."""
        return {
            "shortcuts_created": self.shortcuts_created,
            "shortcuts_reinforced": self.shortcuts_reinforced,
            "sessions_replayed": self.sessions_replayed,
            "replay_strengthened": self.replay_strengthened,
            "patterns_discovered": self.patterns_discovered,
            "patterns_bumped": self.patterns_bumped,
            "semantic_demoted": self.semantic_demoted,
            "neurons_dampened": self.neurons_dampened,
            "synapses_scaled": self.synapses_scaled,
            "episodes_pruned": self.episodes_pruned,
            "sessions_pruned": self.sessions_pruned,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialise the result to a plain dict.

        Returns
        -------
        dict[str, Any]
            All counters, the skip flag and the detail log.
        """
        return {**self.counters(), "skipped": self.skipped, "details": self.details}


# ---------------------------------------------------------------------------
# ConsolidationEngine
# ---------------------------------------------------------------------------


class ConsolidationEngine:
    """Runs decay and consolidation passes over the whole store.

    Parameters
    ----------
    storage:
        An initialised :class:`~hebbian_memory.storage.Storage` instance.
    synapses:
        Shared :class:`~hebbian_memory.synapses.SynapseManager`.
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

    # ------------------------------------------------------------------
    # Decay
    # ------------------------------------------------------------------

    async def decay(self) -> DecayResult:
        """Apply time-based decay and prune weak synapses and orphans.

        Elapsed time is measured from each row's last reinforcement or last
        decay, whichever is later, so calling this twice in quick succession
        changes nothing material the second time.

        Returns
        -------
        DecayResult
            Counts of decayed and pruned rows (all zero on an empty store).
        """
        now = datetime.now(tz=timezone.utc)

        def _do_decay(conn: sqlite3.Connection) -> DecayResult:
            result = DecayResult()
            result.decayed_synapses = self._synapses.decay_in_conn(conn, now)
            result.decayed_neurons = self._decay_neurons(conn, now)
            result.pruned_synapses = self._synapses.prune_in_conn(conn)
            result.pruned_neurons = self._prune_orphans(conn, now)
            return result

        result = await self._storage.execute_transaction(_do_decay, operation="decay")
        logger.info(
            "Decay complete: decayed_synapses=%d decayed_neurons=%d "
            "pruned_synapses=%d pruned_neurons=%d",
            result.decayed_synapses,
            result.decayed_neurons,
            result.pruned_synapses,
            result.pruned_neurons,
        )
        return result

    def _decay_neurons(self, conn: sqlite3.Connection, now: datetime) -> int:
        """Fade myelination of idle neurons, never below the seed floor."""
        seed = self._cfg.learning.myelin_seed
        keep = 1.0 - self._cfg.decay.myelin_decay_rate
        stamp = now.isoformat(timespec="microseconds")

        rows = conn.execute(
            "SELECT id, myelination, last_accessed_at, last_decayed_at "
            "FROM neurons WHERE myelination > ?",
            (seed + _FLOOR_EPSILON,),
        ).fetchall()

        updates: list[tuple[float, str, int]] = []
        for row in rows:
            since = max(row["last_accessed_at"] or "", row["last_decayed_at"] or "")
            days = days_between(since, now)
            if days <= 0.0:
                continue
            new_value = max(seed, row["myelination"] * keep**days)
            if new_value < row["myelination"]:
                updates.append((new_value, stamp, row["id"]))

        if updates:
            conn.executemany(
                "UPDATE neurons SET myelination = ?, last_decayed_at = ? WHERE id = ?",
                updates,
            )
        return len(updates)

    def _prune_orphans(self, conn: sqlite3.Connection, now: datetime) -> int:
        """Delete idle error/semantic neurons that have no synapses left.

        File and tool neurons are never deleted.
        """
        cutoff = (now - timedelta(days=self._cfg.decay.orphan_grace_days)).isoformat(
            timespec="microseconds"
        )
        cursor = conn.execute(
            """
            DELETE FROM neurons
            WHERE type IN ('error', 'semantic')
              AND myelination <= ?
              AND COALESCE(last_accessed_at, created_at) < ?
              AND NOT EXISTS (
                  SELECT 1 FROM synapses s
                  WHERE s.source_id = neurons.id OR s.target_id = neurons.id
              )
            """,
            (self._cfg.learning.myelin_seed + _FLOOR_EPSILON, cutoff),
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Anti-recall
    # ------------------------------------------------------------------

    async def anti_recall(self, session_id: str) -> AntiRecallResult:
        """Weaken the synapses of recalled neurons *session_id* never opened.

        A neuron counts as opened when the session recorded an access to it.
        Each affected synapse keeps ``1 - anti_recall_decay`` of its weight
        but never drops below ``anti_recall_floor``; synapses already at or
        under the floor are left alone.  The session's recall log is cleared,
        so calling this twice does not punish the same suggestions twice.
        """
        session_id = validate_session_id(session_id)
        dcfg = self._cfg.decay

        def _do_anti_recall(conn: sqlite3.Connection) -> AntiRecallResult:
            rows = conn.execute(
                """
                SELECT r.neuron_id, n.path
                FROM recall_log r
                JOIN neurons n ON n.id = r.neuron_id
                WHERE r.session_id = ?
                  AND NOT EXISTS (
                      SELECT 1 FROM access_log a
                      WHERE a.session_id = r.session_id AND a.neuron_id = r.neuron_id
                  )
                ORDER BY n.path
                """,
                (session_id,),
            ).fetchall()
            result = AntiRecallResult(ignored=[row["path"] for row in rows])
            if rows:
                ids = [row["neuron_id"] for row in rows]
                placeholders = ",".join("?" for _ in ids)
                result.weakened = conn.execute(
                    f"""
                    UPDATE synapses
                    SET weight = MAX(?, weight * ?)
                    WHERE weight > ?
                      AND (source_id IN ({placeholders}) OR target_id IN ({placeholders}))
                    """,
                    (
                        dcfg.anti_recall_floor,
                        1.0 - dcfg.anti_recall_decay,
                        dcfg.anti_recall_floor,
                        *ids,
                        *ids,
                    ),
                ).rowcount
            conn.execute("DELETE FROM recall_log WHERE session_id = ?", (session_id,))
            return result

        result = await self._storage.execute_transaction(
            _do_anti_recall, operation="anti_recall"
        )
        logger.info(
            "Anti-recall for session %s: ignored=%d weakened=%d",
            session_id,
            len(result.ignored),
            result.weakened,
        )
        return result

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    async def consolidate(self) -> ConsolidationResult:
        """Run one consolidation cycle under the ``consolidation`` lock.

        Returns
        -------
        ConsolidationResult
            Counters per phase.  ``skipped`` is set, with all counters zero,
            when another process is already consolidating.
        """
        holder = uuid.uuid4().hex

        # Acquire advisory lock to prevent concurrent consolidation.
        def _try_lock(conn: sqlite3.Connection) -> bool:
            return Storage.try_acquire_lock(conn, _LOCK_NAME, holder)

        acquired = await self._storage.execute_transaction(_try_lock, operation="consolidate")
        if not acquired:
            logger.warning("Consolidation already in progress; skipping")
            return ConsolidationResult(skipped=True)

        try:
            now = datetime.now(tz=timezone.utc)

            def _do_consolidate(conn: sqlite3.Connection) -> ConsolidationResult:
                result = ConsolidationResult()
                self._build_shortcuts(conn, result)
                self._replay_sessions(conn, result, now)
                self._discover_cross_session(conn, result, now)
                self._demote_semantic(conn, result, now)
                self._apply_homeostasis(conn, result)
                self._prune_episodes(conn, result, now)
                self._log_consolidation(conn, result)
                return result

            result = await self._storage.execute_transaction(
                _do_consolidate, operation="consolidate"
            )
        finally:
            def _release(conn: sqlite3.Connection) -> None:
                Storage.release_lock(conn, _LOCK_NAME, holder)

            await self._storage.execute_transaction(_release, operation="consolidate")

        logger.info(
            "Consolidation complete: shortcuts=%d/%d replayed=%d strengthened=%d "
            "patterns=%d demoted=%d dampened=%d scaled=%d episodes_pruned=%d "
            "sessions_pruned=%d",
            result.shortcuts_created,
            result.shortcuts_reinforced,
            result.sessions_replayed,
            result.replay_strengthened,
            result.patterns_discovered,
            result.semantic_demoted,
            result.neurons_dampened,
            result.synapses_scaled,
            result.episodes_pruned,
            result.sessions_pruned,
        )
        return result

    # -- Phase 1: shortcuts ---------------------------------------------

    def _build_shortcuts(self, conn: sqlite3.Connection, result: ConsolidationResult) -> None:
        """Reinforce A-C across every strong intermediary B."""
        ccfg = self._cfg.consolidation
        rows = conn.execute(
            "SELECT source_id, target_id, weight FROM synapses WHERE weight >= ?",
            (ccfg.shortcut_min_weight,),
        ).fetchall()
        if not rows:
            return

        # incoming[b]: (a, w) with a -> b; outgoing[b]: (c, w) with b -> c.
        # Undirected edges appear on both sides.
        incoming: dict[int, list[tuple[int, float]]] = {}
        outgoing: dict[int, list[tuple[int, float]]] = {}
        for row in rows:
            src, tgt, weight = row["source_id"], row["target_id"], row["weight"]
            outgoing.setdefault(src, []).append((tgt, weight))
            incoming.setdefault(tgt, []).append((src, weight))
            if not self._synapses.directed:
                outgoing.setdefault(tgt, []).append((src, weight))
                incoming.setdefault(src, []).append((tgt, weight))

        def _strongest(pairs: list[tuple[int, float]]) -> list[tuple[int, float]]:
            ranked = sorted(pairs, key=lambda p: (-p[1], p[0]))
            return ranked[: ccfg.max_intermediary_neighbors]

        budget = ccfg.max_shortcuts
        for middle in sorted(set(incoming) & set(outgoing)):
            if budget <= 0:
                break
            before = _strongest(incoming[middle])
            after = _strongest(outgoing[middle])

            if self._synapses.directed:
                paths = [(a, c) for a in before for c in after]
            else:
                # Each unordered {A, C} once per intermediary.
                paths = list(itertools.combinations(before, 2))

            for (a_id, w_ab), (c_id, w_bc) in paths:
                if budget <= 0:
                    break
                if a_id == c_id:
                    continue
                existing = self._synapses.weight_in_conn(conn, a_id, c_id)
                rate = ccfg.shortcut_rate * w_ab * w_bc
                self._synapses.reinforce_in_conn(conn, a_id, c_id, rate)
                if existing is None:
                    result.shortcuts_created += 1
                else:
                    result.shortcuts_reinforced += 1
                budget -= 1

        if result.shortcuts_created or result.shortcuts_reinforced:
            result.details.append({
                "action": "shortcuts",
                "created": result.shortcuts_created,
                "reinforced": result.shortcuts_reinforced,
            })

    # -- Phase 2: session replay ----------------------------------------

    def _replay_sessions(
        self,
        conn: sqlite3.Connection,
        result: ConsolidationResult,
        now: datetime,
    ) -> None:
        """Replay busy recent sessions, strengthening existing synapses only."""
        ccfg = self._cfg.consolidation
        window_size = self._cfg.learning.co_activation_window
        since = (now - timedelta(days=ccfg.replay_days)).isoformat(timespec="microseconds")

        sessions = conn.execute(
            """
            SELECT session_id, COUNT(*) AS cnt
            FROM access_log
            WHERE accessed_at >= ?
            GROUP BY session_id
            HAVING cnt >= ?
            ORDER BY cnt DESC, session_id ASC
            LIMIT ?
            """,
            (since, ccfg.replay_min_accesses, ccfg.replay_max_sessions),
        ).fetchall()

        for session in sessions:
            accesses = conn.execute(
                "SELECT neuron_id FROM access_log "
                "WHERE session_id = ? AND accessed_at >= ? "
                "ORDER BY access_order ASC, id ASC",
                (session["session_id"], since),
            ).fetchall()

            window: list[int] = []
            for access in accesses:
                current = access["neuron_id"]
                for earlier in window:
                    if earlier == current:
                        continue
                    # Never create phantom patterns: existing synapses only.
                    if self._synapses.weight_in_conn(conn, earlier, current) is None:
                        continue
                    src, tgt = self._synapses.canonical(earlier, current)
                    conn.execute(
                        "UPDATE synapses SET weight = MIN(1.0, weight + ? * (1.0 - weight)) "
                        "WHERE source_id = ? AND target_id = ?",
                        (ccfg.replay_rate, src, tgt),
                    )
                    result.replay_strengthened += 1

                if current in window:
                    window.remove(current)
                window.append(current)
                if len(window) > window_size:
                    window.pop(0)

            result.sessions_replayed += 1

        if result.sessions_replayed:
            result.details.append({
                "action": "replay",
                "sessions": result.sessions_replayed,
                "strengthened": result.replay_strengthened,
            })

    # -- Phase 3: cross-session patterns --------------------------------

    def _discover_cross_session(
        self,
        conn: sqlite3.Connection,
        result: ConsolidationResult,
        now: datetime,
    ) -> None:
        """Wire neuron pairs that keep showing up together across sessions."""
        ccfg = self._cfg.consolidation
        since = (now - timedelta(days=ccfg.replay_days)).isoformat(timespec="microseconds")

        pairs = conn.execute(
            """
            WITH recent AS (
                SELECT DISTINCT session_id, neuron_id
                FROM access_log
                WHERE accessed_at >= ?
            )
            SELECT r1.neuron_id AS n1, r2.neuron_id AS n2,
                   COUNT(*) AS sessions
            FROM recent r1
            JOIN recent r2
              ON r1.session_id = r2.session_id AND r1.neuron_id < r2.neuron_id
            GROUP BY r1.neuron_id, r2.neuron_id
            HAVING sessions >= ?
            ORDER BY sessions DESC, n1 ASC, n2 ASC
            """,
            (since, ccfg.cross_session_min_sessions),
        ).fetchall()

        for pair in pairs:
            # Directed mode wires both orders; undirected collapses to one key.
            keys = {
                self._synapses.canonical(pair["n1"], pair["n2"]),
                self._synapses.canonical(pair["n2"], pair["n1"]),
            }
            for first, second in sorted(keys):
                existing = self._synapses.weight_in_conn(conn, first, second)
                if existing is None:
                    self._synapses.reinforce_in_conn(
                        conn, first, second, ccfg.cross_session_weight
                    )
                    result.patterns_discovered += 1
                elif existing < ccfg.cross_session_weak_below:
                    self._synapses.reinforce_in_conn(
                        conn, first, second, ccfg.cross_session_bump
                    )
                    result.patterns_bumped += 1

        if result.patterns_discovered or result.patterns_bumped:
            result.details.append({
                "action": "cross_session",
                "discovered": result.patterns_discovered,
                "bumped": result.patterns_bumped,
            })

    # -- Phase 4: semantic demotion -------------------------------------

    def _demote_semantic(
        self,
        conn: sqlite3.Connection,
        result: ConsolidationResult,
        now: datetime,
    ) -> None:
        """Delete semantic neurons that never took hold."""
        ccfg = self._cfg.consolidation
        cutoff = (now - timedelta(days=ccfg.demote_after_days)).isoformat(
            timespec="microseconds"
        )
        cursor = conn.execute(
            """
            DELETE FROM neurons
            WHERE type = 'semantic'
              AND access_count <= 1
              AND myelination <= ?
              AND COALESCE(last_accessed_at, created_at) < ?
              AND NOT EXISTS (
                  SELECT 1 FROM synapses s
                  WHERE (s.source_id = neurons.id OR s.target_id = neurons.id)
                    AND s.weight >= ?
              )
            """,
            (
                self._cfg.learning.myelin_seed + _FLOOR_EPSILON,
                cutoff,
                ccfg.demote_max_weight,
            ),
        )
        result.semantic_demoted = cursor.rowcount
        if result.semantic_demoted:
            result.details.append({"action": "demote", "neurons": result.semantic_demoted})

    # -- Phase 5: homeostasis -------------------------------------------

    def _apply_homeostasis(self, conn: sqlite3.Connection, result: ConsolidationResult) -> None:
        """Keep activity from concentrating in a few neurons or saturating weights."""
        ccfg = self._cfg.consolidation
        seed = self._cfg.learning.myelin_seed

        avg_access = conn.execute(
            "SELECT AVG(access_count) FROM neurons WHERE access_count > 0"
        ).fetchone()[0]
        if avg_access:
            cursor = conn.execute(
                "UPDATE neurons SET myelination = MAX(?, myelination * ?) "
                "WHERE access_count > ? AND myelination > ?",
                (
                    seed,
                    ccfg.hyperactive_dampen,
                    avg_access * ccfg.hyperactive_multiplier,
                    seed + _FLOOR_EPSILON,
                ),
            )
            result.neurons_dampened = cursor.rowcount

        avg_weight = conn.execute("SELECT AVG(weight) FROM synapses").fetchone()[0]
        if avg_weight and avg_weight > ccfg.homeostasis_weight_target:
            factor = ccfg.homeostasis_weight_target / avg_weight
            cursor = conn.execute(
                "UPDATE synapses SET weight = MAX(0.0, MIN(1.0, weight * ?))", (factor,)
            )
            result.synapses_scaled = cursor.rowcount
            result.details.append({
                "action": "homeostasis_scale",
                "avg_weight": round(avg_weight, 4),
                "factor": round(factor, 4),
            })

    # -- Phase 6: episodic pruning --------------------------------------

    def _prune_episodes(
        self,
        conn: sqlite3.Connection,
        result: ConsolidationResult,
        now: datetime,
    ) -> None:
        ccfg = self._cfg.consolidation
        cutoff = (now - timedelta(days=ccfg.episodic_retention_days)).isoformat(
            timespec="microseconds"
        )
        pruned = conn.execute(
            "DELETE FROM access_log WHERE accessed_at < ?", (cutoff,)
        ).rowcount
        pruned += conn.execute(
            "DELETE FROM access_log WHERE id NOT IN "
            "(SELECT id FROM access_log ORDER BY id DESC LIMIT ?)",
            (ccfg.episodic_max_rows,),
        ).rowcount
        result.episodes_pruned = pruned
        result.sessions_pruned = conn.execute(
            "DELETE FROM sessions WHERE COALESCE(last_active_at, started_at) < ?",
            (cutoff,),
        ).rowcount
        conn.execute("DELETE FROM recall_log WHERE recalled_at < ?", (cutoff,))

    # -- Phase 7: log ---------------------------------------------------

    @staticmethod
    def _log_consolidation(conn: sqlite3.Connection, result: ConsolidationResult) -> None:
        """Write a summary record to the ``consolidation_log`` table."""
        conn.execute(
            "INSERT INTO consolidation_log (action, details) VALUES (?, ?)",
            ("consolidate", json.dumps(result.to_dict())),
        )
