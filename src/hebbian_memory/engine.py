"""Facade tying every subsystem to one store handle and one session.

:class:`HebbianEngine` is the library surface host adapters call.  It holds
no learned state of its own -- the store is the single source of truth -- so
any number of short-lived engines (in one process or many) can share a
database and a session id.

Usage::

    from hebbian_memory import HebbianEngine, Storage

    async with Storage("~/.hebbian/memory.db") as store:
        engine = HebbianEngine(store, session_id="build-42")
        await engine.record("src/auth.py", "file", query="token refresh")
        for hit in await engine.recall("token refresh"):
            print(hit.neuron.path, hit.confidence)
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from hebbian_memory.config import HebbianConfig
from hebbian_memory.consolidation import (
    AntiRecallResult,
    ConsolidationEngine,
    ConsolidationResult,
    DecayResult,
)
from hebbian_memory.error_fix import ErrorFixLearner, ErrorRecall, ErrorResolution
from hebbian_memory.events import AccessEvent
from hebbian_memory.exceptions import ValidationError
from hebbian_memory.learning import LearningEngine
from hebbian_memory.neurons import HubInfo, Neuron, NeuronManager, StaleNeuron
from hebbian_memory.retrieval import RecallResult, RetrievalEngine
from hebbian_memory.sessions import SessionManager, SessionSummary
from hebbian_memory.storage import Storage
from hebbian_memory.synapses import SynapseManager

logger = logging.getLogger(__name__)


class HebbianEngine:
    """Hebbian memory operations bound to a store and a session.

    Parameters
    ----------
    storage:
        An initialised :class:`~hebbian_memory.storage.Storage`.  The caller
        owns it and is responsible for closing it.
    session_id:
        Groups accesses into one co-activation window.  A random id is
        generated when omitted.
    config:
        Overrides the configuration carried by *storage*.
    """

    def __init__(
        self,
        storage: Storage,
        session_id: str | None = None,
        config: HebbianConfig | None = None,
    ) -> None:
        if session_id is not None and (not isinstance(session_id, str) or not session_id.strip()):
            raise ValidationError("session_id", "must be a non-empty string", session_id)
        self._storage = storage
        self._cfg = config or storage.config
        self._session_id = session_id or uuid.uuid4().hex

        self._neurons = NeuronManager(storage, self._cfg)
        self._synapses = SynapseManager(storage, self._cfg)
        self._learning = LearningEngine(storage, self._synapses, self._cfg)
        self._retrieval = RetrievalEngine(storage, self._neurons, self._synapses, self._cfg)
        self._consolidation = ConsolidationEngine(storage, self._synapses, self._cfg)
        self._sessions = SessionManager(storage, self._cfg)
        self._errors = ErrorFixLearner(
            storage,
            learning=self._learning,
            retrieval=self._retrieval,
            synapses=self._synapses,
            config=self._cfg,
        )

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def storage(self) -> Storage:
        return self._storage

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    async def record(
        self,
        path: str,
        type: str = "file",
        query: str | None = None,
    ) -> Neuron:
        """Record one access; see :meth:`LearningEngine.record`."""
        return await self._learning.record(path, type, self._session_id, query)

    async def record_event(self, event: AccessEvent) -> Neuron:
        """Record a validated :class:`~hebbian_memory.events.AccessEvent`."""
        if not isinstance(event, AccessEvent):
            raise ValidationError("event", "must be an AccessEvent", event)
        return await self.record(event.path, event.type, event.context)

    # ------------------------------------------------------------------
    # Recall
    # ------------------------------------------------------------------

    async def recall(
        self,
        query: str,
        type: str | None = None,
        limit: int | None = None,
        token_budget: int | None = None,
        query_embedding: list[float] | None = None,
        episodic: bool = False,
    ) -> list[RecallResult]:
        """Ranked, budgeted recall; see :meth:`RetrievalEngine.recall`."""
        return await self._retrieval.recall(
            query,
            neuron_type=type,
            limit=limit,
            token_budget=token_budget,
            query_embedding=query_embedding,
            session_id=self._session_id,
            episodic=episodic,
        )

    async def recall_episodic(self, query: str, limit: int = 5) -> list[RecallResult]:
        """Files from past sessions whose queries matched *query*."""
        return await self._retrieval.recall_episodic(query, limit)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def decay(self) -> DecayResult:
        return await self._consolidation.decay()

    async def consolidate(self) -> ConsolidationResult:
        return await self._consolidation.consolidate()

    async def apply_anti_recall(self) -> AntiRecallResult:
        """Weaken links of neurons this session was shown but never opened.

        Call at the end of a session; see :meth:`ConsolidationEngine.anti_recall`.
        """
        return await self._consolidation.anti_recall(self._session_id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def set_session_intent(self, intent: str) -> None:
        await self._sessions.set_intent(self._session_id, intent)

    async def session_intent(self) -> str | None:
        return await self._sessions.get_intent(self._session_id)

    async def recent_sessions(self, days: int = 7) -> list[SessionSummary]:
        """Sessions started in the last *days* days, with intents and counters."""
        return await self._sessions.recent(days)

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    async def record_error(self, error_text: str, query: str | None = None) -> ErrorRecall:
        return await self._errors.record_error(error_text, self._session_id, query)

    async def resolve_error(
        self,
        error_text: str,
        fixed_files: list[str],
        note: str | None = None,
    ) -> ErrorResolution:
        return await self._errors.resolve_error(
            error_text, fixed_files, self._session_id, note
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def stats(self) -> dict[str, Any]:
        """Store-wide counters.

        Returns
        -------
        dict
            ``neuron_count``, ``synapse_count``, ``superhighways``,
            ``avg_myelination``, ``total_accesses`` and
            ``total_tokens_saved``; all zero on an empty store.
        """
        counts = await self._neurons.counts()
        return {
            "neuron_count": counts["neuron_count"],
            "synapse_count": counts["synapse_count"],
            "superhighways": counts["superhighways"],
            "avg_myelination": float(counts["avg_myelination"]),
            "total_accesses": counts["total_accesses"],
            "total_tokens_saved": counts["total_tokens_saved"],
        }

    async def token_report(self) -> dict[str, Any]:
        """Estimated tokens saved by recall versus search-then-read.

        Without memory every access pays a search plus a read.  With memory,
        ``floor(access_count * myelination)`` of a neuron's accesses are
        assumed served by recall and pay only the read.
        """
        tokens = self._cfg.tokens
        full_cost = tokens.tokens_per_search + tokens.tokens_per_file_read

        tokens_used = 0
        tokens_with_memory = 0
        for access_count, myelination in await self._neurons.access_profile():
            via_recall = int(access_count * myelination)
            tokens_used += access_count * full_cost
            tokens_with_memory += (
                via_recall * tokens.tokens_per_file_read
                + (access_count - via_recall) * full_cost
            )

        saved = tokens_used - tokens_with_memory
        return {
            "tokens_used": tokens_used,
            "tokens_with_memory": tokens_with_memory,
            "tokens_saved": saved,
            "savings_pct": (saved / tokens_used) * 100 if tokens_used else 0.0,
        }

    async def get_superhighways(self, min_myelination: float = 0.5) -> list[Neuron]:
        """Neurons with myelination at or above *min_myelination*, strongest first."""
        return await self._neurons.superhighways(min_myelination)

    async def embedding_coverage(self) -> dict[str, Any]:
        return await self._neurons.embedding_coverage()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def set_embedding(
        self,
        path: str,
        type: str,
        vector: list[float],
    ) -> Neuron | None:
        """Attach a precomputed embedding; ``None`` if the neuron is unknown."""
        return await self._neurons.set_embedding(path, type, vector)

    async def get_neuron(self, path: str, type: str = "file") -> Neuron | None:
        return await self._neurons.get_by_key(path, type)

    async def get_hubs(self, limit: int = 10) -> list[HubInfo]:
        return await self._neurons.hubs(limit)

    async def detect_stale(
        self,
        min_myelination: float = 0.1,
        days_inactive: int = 7,
    ) -> list[StaleNeuron]:
        return await self._neurons.stale(min_myelination, days_inactive)

    async def neighbors(
        self,
        path: str,
        type: str = "file",
        limit: int | None = None,
    ) -> list[tuple[Neuron, float]]:
        """Neurons linked to ``(type, path)`` with the link weight, strongest first."""
        neuron = await self._neurons.get_by_key(path, type)
        if neuron is None:
            return []
        pairs = await self._synapses.get_neighbors(neuron.id, limit=limit)
        if not pairs:
            return []
        others = await self._neurons.get_batch([nid for nid, _ in pairs])
        return [(others[nid], syn.weight) for nid, syn in pairs if nid in others]
