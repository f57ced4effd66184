"""Spreading activation recall for the Hebbian memory engine.

The recall algorithm proceeds in four steps:

1. **Seeding** -- neurons whose path or recent contexts contain a query
   keyword (SQL ``LIKE``), plus neurons whose stored embedding is close to a
   supplied query embedding.  Each seed starts with its match strength,
   amplified by myelination, path and filename-stem matches, and nudged
   up for source files or down for documentation.
2. **Spreading activation** -- activation flows outward along synapses for
   a bounded number of hops, attenuated by synapse weight, a per-hop decay
   and the source's fan-out, and accumulates additively (clamped to 1).
   Activation leaving a tool neuron is damped.
3. **Ranking** -- drop neurons below the confidence floor or outside the
   type filter; order by confidence, myelination, recency, then path.
4. **Budget fitting** -- accept results greedily in rank order until the
   next one would overflow the caller's token budget or ``limit`` is hit.

Recall never scans the full graph: seed count, hop count and per-neuron
fan-out are all bounded by configuration.

Usage::

    from hebbian_memory.retrieval import RetrievalEngine

    engine = RetrievalEngine(storage)
    for result in await engine.recall("auth token refresh", limit=5):
        print(result.neuron.path, round(result.confidence, 3))
"""

from __future__ import annotations

import logging
import math
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from hebbian_memory.config import HebbianConfig
from hebbian_memory.exceptions import ValidationError
from hebbian_memory.neurons import (
    Neuron,
    NeuronManager,
    neuron_token_cost,
    validate_embedding,
    validate_neuron_type,
)
from hebbian_memory.storage import (
    Storage,
    deserialize_embedding,
    parse_timestamp,
    serialize_embedding,
    utcnow_iso,
)
from hebbian_memory.synapses import SynapseManager

log = logging.getLogger(__name__)

DIRECT = "direct"
"""Activation path label for neurons that matched the query themselves."""

EPISODIC = "episodic"
"""Activation path label for neurons recalled from past sessions' access logs."""


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class RecallResult:
    """One ranked recall hit.

    Parameters
    ----------
    neuron:
        The recalled neuron.
    confidence:
        Accumulated activation in ``[0, 1]``.
    estimated_tokens_saved:
        Tokens the caller avoids by not searching for and re-reading this item.
    token_cost:
        Tokens this result consumes from the caller's budget.
    activation_path:
        How the neuron was reached: ``"direct"``, ``"spread(n) via <path>"``,
        ``"episodic"`` or a label supplied by the caller's extra seeds.
    """

    neuron: Neuron
    confidence: float
    estimated_tokens_saved: int
    token_cost: int
    activation_path: str = DIRECT

    def to_dict(self) -> dict[str, Any]:
        return {
            "neuron": self.neuron.to_dict(),
            "confidence": round(self.confidence, 4),
            "estimated_tokens_saved": self.estimated_tokens_saved,
            "token_cost": self.token_cost,
            "activation_path": self.activation_path,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def extract_keywords(query: str, min_length: int = 3) -> list[str]:
    """Lower-cased whitespace tokens of at least *min_length* chars, deduplicated."""
    seen: dict[str, None] = {}
    for token in query.lower().split():
        if len(token) >= min_length:
            seen.setdefault(token, None)
    return list(seen)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two equal-length vectors; ``0.0`` if either is zero."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def _filename_stem(path: str) -> str:
    basename = os.path.basename(path.replace("\\", "/").rstrip("/")).lower()
    stem, _ext = os.path.splitext(basename)
    return stem or basename


def _like_pattern(keyword: str) -> str:
    escaped = keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _extension_set(extensions: str) -> frozenset[str]:
    return frozenset(e.strip().lower() for e in extensions.split(",") if e.strip())


def file_type_bonus(path: str, config: HebbianConfig) -> float:
    """Seed amplifier adjustment for *path*: source code up, documentation down."""
    rcfg = config.recall
    _stem, ext = os.path.splitext(path.lower())
    if ext in _extension_set(rcfg.source_extensions):
        return rcfg.source_code_boost
    if ext in _extension_set(rcfg.doc_extensions):
        return -rcfg.doc_penalty
    return 0.0


def _validate_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValidationError("limit", "must be a positive integer", limit)
    return limit


def _validate_budget(token_budget: Any) -> int | None:
    if token_budget is None:
        return None
    if isinstance(token_budget, bool) or not isinstance(token_budget, int) or token_budget <= 0:
        raise ValidationError("token_budget", "must be a positive integer", token_budget)
    return token_budget


def rank_key_sort(candidates: list[tuple[Neuron, float]]) -> list[tuple[Neuron, float]]:
    """Order by confidence desc, myelination desc, last access desc, path asc.

    Applied as successive stable sorts, least significant key first.
    """
    ordered = sorted(candidates, key=lambda c: (c[0].path, c[0].type))
    ordered.sort(key=lambda c: c[0].last_accessed_at or "", reverse=True)
    ordered.sort(key=lambda c: (c[1], c[0].myelination), reverse=True)
    return ordered


# ---------------------------------------------------------------------------
# Retrieval engine
# ---------------------------------------------------------------------------


class RetrievalEngine:
    """Keyword/vector seeding plus spreading activation over synapses.

    Parameters
    ----------
    storage:
        An initialised :class:`~hebbian_memory.storage.Storage` instance.
    neurons, synapses:
        Shared managers; built from *storage* when omitted.
    config:
        Overrides the configuration carried by *storage*.
    """

    def __init__(
        self,
        storage: Storage,
        neurons: NeuronManager | None = None,
        synapses: SynapseManager | None = None,
        config: HebbianConfig | None = None,
    ) -> None:
        self._storage = storage
        self._cfg = config or storage.config
        self._neurons = neurons or NeuronManager(storage, self._cfg)
        self._synapses = synapses or SynapseManager(storage, self._cfg)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def recall(
        self,
        query: str,
        neuron_type: str | None = None,
        limit: int | None = None,
        token_budget: int | None = None,
        query_embedding: list[float] | None = None,
        *,
        session_id: str | None = None,
        extra_seeds: dict[int, tuple[float, str]] | None = None,
        episodic: bool = False,
    ) -> list[RecallResult]:
        """Rank neurons relevant to *query*.

        Parameters
        ----------
        query:
            Free-text query.  Shorter than ``recall.min_query_length`` after
            stripping returns ``[]`` without touching the store.
        neuron_type:
            Only return neurons of this type.  Spreading still crosses
            neurons of every type.
        limit:
            Maximum number of results (defaults to ``recall.default_limit``).
        token_budget:
            Upper bound on the summed ``token_cost`` of returned results.
        query_embedding:
            Precomputed query vector for similarity seeding.
        session_id:
            When given, tokens saved are credited to this session and the
            returned neurons are logged for :meth:`ConsolidationEngine.anti_recall`.
        extra_seeds:
            ``{neuron_id: (activation, label)}`` injected as additional seeds
            (used by error-fix recall).
        episodic:
            Also merge up to ``recall.episodic_merge_limit`` files from past
            sessions whose queries matched (see :meth:`recall_episodic`).
            They compete in ranking and budgeting like any other hit.

        Returns
        -------
        list[RecallResult]
            Possibly empty; an empty list is never an error.

        Raises
        ------
        ValidationError
            On a non-string query, unknown type, non-positive limit or
            budget, or malformed embedding.
        """
        if not isinstance(query, str):
            raise ValidationError("query", "must be a string", query)
        if neuron_type is not None:
            validate_neuron_type(neuron_type)
        limit = _validate_limit(self._cfg.recall.default_limit if limit is None else limit)
        token_budget = _validate_budget(token_budget)
        embedding = (
            validate_embedding(query_embedding, "query_embedding")
            if query_embedding is not None
            else None
        )

        text = query.strip()
        if len(text) < self._cfg.recall.min_query_length and not extra_seeds:
            return []

        seeds, labels, neuron_map = await self._find_seeds(text, embedding)
        for neuron_id, (activation, label) in (extra_seeds or {}).items():
            seeds[neuron_id] = min(1.0, max(seeds.get(neuron_id, 0.0), activation))
            labels.setdefault(neuron_id, label)
        if not seeds and not episodic:
            log.debug("recall %r: no seeds", text)
            return []

        missing = [nid for nid in seeds if nid not in neuron_map]
        if missing:
            neuron_map.update(await self._neurons.get_batch(missing))

        activation = await self._spread_activation(seeds, labels, neuron_map)
        if episodic:
            merge_limit = min(limit, self._cfg.recall.episodic_merge_limit)
            for neuron, confidence in await self._episodic_candidates(text, merge_limit):
                neuron_map.setdefault(neuron.id, neuron)
                activation[neuron.id] = max(activation.get(neuron.id, 0.0), confidence)
                labels.setdefault(neuron.id, EPISODIC)

        results = self._rank_and_budget(
            activation, labels, neuron_map, neuron_type, limit, token_budget
        )

        if session_id and results:
            await self._credit_session(session_id, results)

        log.debug(
            "recall %r: %d seeds, %d activated, %d returned",
            text,
            len(seeds),
            len(activation),
            len(results),
        )
        return results

    async def recall_episodic(self, query: str, limit: int = 5) -> list[RecallResult]:
        """Files worked on in recent sessions whose queries matched *query*.

        Complements :meth:`recall` with working context that has not yet been
        consolidated into synapses.  Sessions are found by keyword ``LIKE``
        against ``access_log.query`` within ``recall.episodic_days``; their
        files are scored by how often they were touched and how recently.

        Parameters
        ----------
        query:
            Free-text query; keywords follow the same rules as :meth:`recall`.
        limit:
            Maximum number of results.

        Returns
        -------
        list[RecallResult]
            Labelled ``"episodic"``, ranked like :meth:`recall`.
        """
        if not isinstance(query, str):
            raise ValidationError("query", "must be a string", query)
        limit = _validate_limit(limit)
        search_cost = self._cfg.tokens.tokens_per_search
        results = []
        for neuron, confidence in rank_key_sort(
            await self._episodic_candidates(query.strip(), limit)
        ):
            cost = neuron_token_cost(neuron.type, neuron.path, neuron.contexts, self._cfg)
            results.append(
                RecallResult(
                    neuron=neuron,
                    confidence=confidence,
                    estimated_tokens_saved=search_cost + cost,
                    token_cost=cost,
                    activation_path=EPISODIC,
                )
            )
        return results

    async def _episodic_candidates(
        self,
        query: str,
        limit: int,
    ) -> list[tuple[Neuron, float]]:
        """``(file neuron, confidence)`` pairs from sessions whose queries matched.

        Confidence is ``min(count / saturation, 1) * (0.5 + 0.5 * recency)``
        with recency falling linearly to zero over ``episodic_days``.
        """
        rcfg = self._cfg.recall
        keywords = extract_keywords(query, rcfg.keyword_min_length)
        if not keywords or limit <= 0:
            return []

        now = datetime.now(tz=timezone.utc)
        window = timedelta(days=rcfg.episodic_days)
        since = (now - window).isoformat(timespec="microseconds")
        clauses = " OR ".join("query LIKE ? ESCAPE '\\'" for _ in keywords)
        sessions = await self._storage.execute(
            f"""
            SELECT session_id, MAX(accessed_at) AS last_at
            FROM access_log
            WHERE ({clauses}) AND accessed_at >= ?
            GROUP BY session_id
            ORDER BY last_at DESC, session_id ASC
            LIMIT ?
            """,
            (*(_like_pattern(k) for k in keywords), since, rcfg.episodic_max_sessions),
        )
        if not sessions:
            return []

        session_ids = [row["session_id"] for row in sessions]
        placeholders = ",".join("?" for _ in session_ids)
        rows = await self._storage.execute(
            f"""
            SELECT a.neuron_id, COUNT(*) AS hits, MAX(a.accessed_at) AS last_at
            FROM access_log a
            JOIN neurons n ON n.id = a.neuron_id
            WHERE a.session_id IN ({placeholders}) AND n.type = 'file'
            GROUP BY a.neuron_id
            ORDER BY hits DESC, last_at DESC, a.neuron_id ASC
            """,
            tuple(session_ids),
        )

        scored: list[tuple[int, float]] = []
        for row in rows:
            last = parse_timestamp(row["last_at"])
            age = (now - last).total_seconds() if last is not None else window.total_seconds()
            recency = max(0.0, 1.0 - age / window.total_seconds())
            frequency = min(row["hits"] / rcfg.episodic_saturation, 1.0)
            confidence = min(frequency * (0.5 + 0.5 * recency), 1.0)
            if confidence >= rcfg.min_confidence:
                scored.append((row["neuron_id"], confidence))
            if len(scored) >= limit:
                break

        neurons = await self._neurons.get_batch([nid for nid, _ in scored])
        return [(neurons[nid], conf) for nid, conf in scored if nid in neurons]

    # ------------------------------------------------------------------
    # Step 1: seeding
    # ------------------------------------------------------------------

    async def _find_seeds(
        self,
        query: str,
        embedding: list[float] | None,
    ) -> tuple[dict[int, float], dict[int, str], dict[int, Neuron]]:
        """Return ``(seed_activation, labels, neuron_map)`` for *query*."""
        rcfg = self._cfg.recall
        keywords = extract_keywords(query, rcfg.keyword_min_length)

        candidates: dict[int, Neuron] = {}
        if keywords:
            clauses = " OR ".join(
                "path LIKE ? ESCAPE '\\' OR contexts LIKE ? ESCAPE '\\'" for _ in keywords
            )
            params: list[Any] = []
            for keyword in keywords:
                pattern = _like_pattern(keyword)
                params.extend((pattern, pattern))
            rows = await self._storage.execute(
                f"SELECT * FROM neurons WHERE {clauses} "
                f"ORDER BY myelination DESC, id ASC LIMIT ?",
                (*params, rcfg.max_seeds),
            )
            for row in rows:
                candidates[row["id"]] = Neuron.from_row(row)

        similarities: dict[int, float] = {}
        if embedding is not None:
            similarities = await self._vector_matches(embedding)
            missing = [nid for nid in similarities if nid not in candidates]
            if missing:
                candidates.update(await self._neurons.get_batch(missing))

        seeds: dict[int, float] = {}
        for neuron_id, neuron in candidates.items():
            score = self._seed_activation(neuron, keywords, similarities.get(neuron_id, 0.0))
            if score > 0.0:
                seeds[neuron_id] = score

        # Keep the strongest seeds when keyword and vector matches together overflow.
        if len(seeds) > rcfg.max_seeds:
            kept = sorted(seeds.items(), key=lambda kv: (-kv[1], kv[0]))[: rcfg.max_seeds]
            seeds = dict(kept)

        labels = {nid: DIRECT for nid in seeds}
        return seeds, labels, candidates

    def _seed_activation(
        self,
        neuron: Neuron,
        keywords: list[str],
        similarity: float,
    ) -> float:
        """Initial activation of a seed.

        ``min(1, match * (1 + myelin_weight*min(m, cap) + path_bonus*path_ratio
        + stem_bonus*stem + type_bonus))`` where *match* is the larger of the
        keyword overlap ratio and the cosine similarity, floored by a
        filename-stem match.  *type_bonus* favours source files over docs.
        """
        rcfg = self._cfg.recall
        match = max(0.0, similarity)
        path_ratio = 0.0
        stem_hit = False

        if keywords:
            path_lower = neuron.path.lower()
            haystack = " ".join([path_lower, *(c.lower() for c in neuron.contexts)])
            overlap = sum(1 for k in keywords if k in haystack) / len(keywords)
            path_ratio = sum(1 for k in keywords if k in path_lower) / len(keywords)
            stem = _filename_stem(neuron.path)
            stem_hit = any(len(k) >= rcfg.stem_min_length and k in stem for k in keywords)
            match = max(match, overlap)
            if stem_hit:
                match = max(match, rcfg.stem_match_floor)

        if match <= 0.0:
            return 0.0

        amplifier = (
            1.0
            + rcfg.myelin_weight * min(neuron.myelination, rcfg.myelin_cap)
            + rcfg.path_bonus * path_ratio
            + (rcfg.stem_bonus if stem_hit else 0.0)
            + (file_type_bonus(neuron.path, self._cfg) if neuron.type == "file" else 0.0)
        )
        return min(1.0, match * amplifier)

    async def _vector_matches(self, embedding: list[float]) -> dict[int, float]:
        """Neurons whose embedding has cosine similarity above the threshold.

        Scored by sqlite-vec's ``vec_distance_cosine`` when the extension is
        loaded, in Python otherwise.  Embeddings of a different dimension are
        ignored.
        """
        rcfg = self._cfg.recall
        if not any(embedding):
            return {}
        byte_length = len(serialize_embedding(embedding))

        if self._storage.vec_available:
            rows = await self._storage.execute(
                """
                SELECT id, 1.0 - vec_distance_cosine(embedding, ?) AS similarity
                FROM neurons
                WHERE embedding IS NOT NULL AND length(embedding) = ?
                ORDER BY similarity DESC, id ASC
                LIMIT ?
                """,
                (serialize_embedding(embedding), byte_length, rcfg.max_seeds),
            )
            return {
                row["id"]: row["similarity"]
                for row in rows
                if row["similarity"] is not None and row["similarity"] > rcfg.embedding_threshold
            }

        rows = await self._storage.execute(
            "SELECT id, embedding FROM neurons "
            "WHERE embedding IS NOT NULL AND length(embedding) = ?",
            (byte_length,),
        )
        scored = [
            (row["id"], cosine_similarity(embedding, deserialize_embedding(row["embedding"])))
            for row in rows
        ]
        scored = [(nid, sim) for nid, sim in scored if sim > rcfg.embedding_threshold]
        scored.sort(key=lambda pair: (-pair[1], pair[0]))
        return dict(scored[: rcfg.max_seeds])

    # ------------------------------------------------------------------
    # Step 2: spreading activation
    # ------------------------------------------------------------------

    async def _spread_activation(
        self,
        seeds: dict[int, float],
        labels: dict[int, str],
        neuron_map: dict[int, Neuron],
    ) -> dict[int, float]:
        """Propagate activation through the synapse graph.

        Seeds are pre-visited so they are never re-expanded, which breaks
        cycles.  The visited set gates frontier expansion only: a visited
        neuron still accumulates activation from every path that reaches it.
        *labels* and *neuron_map* are filled in for every neuron reached.
        """
        rcfg = self._cfg.recall
        activated: dict[int, float] = dict(seeds)
        visited: set[int] = set(seeds)
        frontier: set[int] = set(seeds)

        for hop in range(1, rcfg.max_hops + 1):
            if not frontier:
                break

            ordered_frontier = sorted(frontier)
            neighbour_map = await self._synapses.get_neighbors_batch(
                ordered_frontier, min_weight=rcfg.min_spread_weight
            )
            degrees = await self._synapses.degrees(ordered_frontier)

            wanted = {
                neighbour_id
                for source_id in ordered_frontier
                for neighbour_id, _ in neighbour_map.get(source_id, [])[: rcfg.max_fan_out]
                if neighbour_id not in neuron_map
            }
            if wanted:
                neuron_map.update(await self._neurons.get_batch(sorted(wanted)))

            next_frontier: set[int] = set()
            for source_id in ordered_frontier:
                source_activation = activated.get(source_id, 0.0)
                degree = min(degrees.get(source_id, 0), rcfg.fan_degree_cap)
                norm = 1.0 / math.sqrt(degree) if degree > 0 else 1.0
                source = neuron_map.get(source_id)
                # Tools co-occur with everything; damp what flows out of them.
                damping = (
                    rcfg.tool_spread_dampening
                    if source is not None and source.type == "tool"
                    else 1.0
                )

                for neighbour_id, synapse in neighbour_map.get(source_id, [])[: rcfg.max_fan_out]:
                    target = neuron_map.get(neighbour_id)
                    if target is None:
                        continue
                    increment = (
                        source_activation
                        * synapse.weight
                        * rcfg.hop_decay
                        * norm
                        * damping
                        * (1.0 + min(target.myelination, rcfg.myelin_cap))
                    )
                    new_value = min(1.0, activated.get(neighbour_id, 0.0) + increment)
                    activated[neighbour_id] = new_value
                    if neighbour_id not in labels:
                        via = source.path if source is not None else str(source_id)
                        labels[neighbour_id] = f"spread({hop}) via {via}"

                    if neighbour_id not in visited and new_value >= rcfg.min_activation:
                        next_frontier.add(neighbour_id)

            log.debug("spread hop %d: %d -> %d frontier", hop, len(frontier), len(next_frontier))
            visited.update(next_frontier)
            frontier = next_frontier

        return activated

    # ------------------------------------------------------------------
    # Steps 3-4: ranking and budget
    # ------------------------------------------------------------------

    def _rank_and_budget(
        self,
        activation: dict[int, float],
        labels: dict[int, str],
        neuron_map: dict[int, Neuron],
        neuron_type: str | None,
        limit: int,
        token_budget: int | None,
    ) -> list[RecallResult]:
        floor = self._cfg.recall.min_confidence
        candidates: list[tuple[Neuron, float]] = []
        for neuron_id, value in activation.items():
            neuron = neuron_map.get(neuron_id)
            if neuron is None:
                continue
            if neuron_type is not None and neuron.type != neuron_type:
                continue
            confidence = max(0.0, min(1.0, value))
            if confidence >= floor:
                candidates.append((neuron, confidence))

        search_cost = self._cfg.tokens.tokens_per_search
        results: list[RecallResult] = []
        spent = 0
        for neuron, confidence in rank_key_sort(candidates):
            if len(results) >= limit:
                break
            cost = neuron_token_cost(neuron.type, neuron.path, neuron.contexts, self._cfg)
            if token_budget is not None and spent + cost > token_budget:
                break
            spent += cost
            results.append(
                RecallResult(
                    neuron=neuron,
                    confidence=confidence,
                    estimated_tokens_saved=search_cost + cost,
                    token_cost=cost,
                    activation_path=labels.get(neuron.id, DIRECT),
                )
            )
        return results

    async def _credit_session(self, session_id: str, results: list[RecallResult]) -> None:
        """Credit saved tokens to the session and log what it was shown."""
        saved = sum(r.estimated_tokens_saved for r in results)
        stamp = utcnow_iso()

        def _do_credit(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO sessions (id, started_at, last_active_at, tokens_saved, recalls)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT(id) DO UPDATE SET
                    tokens_saved = tokens_saved + excluded.tokens_saved,
                    recalls = recalls + 1,
                    last_active_at = excluded.last_active_at
                """,
                (session_id, stamp, stamp, saved),
            )
            conn.executemany(
                "INSERT INTO recall_log (session_id, neuron_id, recalled_at) VALUES (?, ?, ?) "
                "ON CONFLICT(session_id, neuron_id) DO NOTHING",
                [(session_id, r.neuron.id, stamp) for r in results],
            )

        await self._storage.execute_transaction(_do_credit, operation="recall")
