"""Error -> fix learning for the Hebbian memory engine.

Errors are stored as ``error`` neurons keyed by a *normalised* signature so
that the same failure with different line numbers, addresses or quoted
values clusters onto one neuron.  Each error is also filed under a coarse
*fingerprint* (``TYPE|operation``, e.g. ``TYPE_ERROR|property_access``)
for category-level matching.

- :meth:`ErrorFixLearner.record_error` records the error and immediately
  recalls file neurons previously linked to it.
- :meth:`ErrorFixLearner.resolve_error` wires the error (and its
  fingerprint) to the files that fixed it with strong synapses.  Unknown
  errors are created on the fly; resolution is always accepted.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from hebbian_memory.config import HebbianConfig
from hebbian_memory.exceptions import ValidationError
from hebbian_memory.learning import LearningEngine, push_context, validate_session_id
from hebbian_memory.neurons import (
    Neuron,
    NeuronManager,
    neuron_token_cost,
    validate_path,
)
from hebbian_memory.retrieval import RecallResult, RetrievalEngine, rank_key_sort
from hebbian_memory.storage import Storage
from hebbian_memory.synapses import SynapseManager

log = logging.getLogger(__name__)

ERROR_FIX_PATH = "error→fix"
"""Activation path label for fixes reached through error neurons."""

# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

# Applied in order.  Stack frames and timestamps go before the generic
# ``:line:col`` rule, which would otherwise eat their colon-separated digits.
_NORMALISERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bat\s+.*\(.*:\d+:\d+\)"), "at STACKFRAME"),
    (re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}[:\d.]*"), "TIMESTAMP"),
    (re.compile(r":\d+:\d+"), ":X:X"),
    (re.compile(r"\bline \d+", re.IGNORECASE), "line X"),
    (re.compile(r"'[^']*'"), "'VAR'"),
    (re.compile(r'"[^"]*"'), '"VAR"'),
    (re.compile(r"\b0x[0-9a-fA-F]+\b"), "0xADDR"),
    (re.compile(r"\b\d{10,13}\b"), "EPOCH"),
)

# First match wins.
_TYPE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), name)
    for pattern, name in (
        (r"ECONNREFUSED", "CONNECTION_REFUSED"),
        (r"ETIMEDOUT", "CONNECTION_TIMEOUT"),
        (r"ENOTFOUND", "DNS_FAILURE"),
        (r"ENOENT", "FILE_NOT_FOUND"),
        (r"EACCES|EPERM", "PERMISSION_DENIED"),
        (r"EMFILE|ENFILE", "FD_EXHAUSTION"),
        (r"HTTP/\d\.\d\s+[45]\d{2}|status[_\s]?code[:\s]+[45]\d{2}", "HTTP_ERROR"),
        (r"TypeError", "TYPE_ERROR"),
        (r"ReferenceError", "REFERENCE_ERROR"),
        (r"SyntaxError", "SYNTAX_ERROR"),
        (r"RangeError", "RANGE_ERROR"),
        (r"KeyError", "KEY_ERROR"),
        (r"ValueError", "VALUE_ERROR"),
        (r"AttributeError", "ATTRIBUTE_ERROR"),
        (r"ImportError|ModuleNotFoundError", "IMPORT_ERROR"),
        (r"FileNotFoundError|No such file", "FILE_NOT_FOUND"),
        (r"PermissionError", "PERMISSION_DENIED"),
        (r"error\[E\d+\]", "RUST_COMPILE_ERROR"),
        (r"cannot find module|Module not found", "MODULE_NOT_FOUND"),
        (r"Cannot read propert|undefined is not|null is not", "NULL_REFERENCE"),
        (r"out of memory|OOM|heap", "OUT_OF_MEMORY"),
        (r"timeout|timed? ?out", "TIMEOUT"),
        (r"assertion|assert", "ASSERTION_FAILED"),
        (r"Traceback", "PYTHON_TRACEBACK"),
    )
)

_OPERATION_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), name)
    for pattern, name in (
        (r"Cannot read propert|property.*of (null|undefined)", "property_access"),
        (r"is not a function|is not callable", "function_call"),
        (r"is not defined|is not declared", "variable_lookup"),
        (r"import|require|from\s+['\"]", "importing"),
        (r"reading|read|fetch|load|open", "reading"),
        (r"writing|write|save|store", "writing"),
        (r"parsing|parse|JSON\.parse|decode", "parsing"),
        (r"connect|listen|bind|socket", "connecting"),
        (r"compil|build|transpil", "compiling"),
        (r"execut|run|spawn|eval", "executing"),
        (r"delete|remove|drop|unlink", "deleting"),
        (r"query|select|insert|update", "querying"),
    )
)


def normalize_error(text: str) -> str:
    """Canonicalise an error message so equivalent failures share one signature.

    Replaces line/column numbers, quoted values, hex addresses, timestamps,
    epoch numbers and JS stack frames with fixed placeholders.

    Examples
    --------
    >>> normalize_error("TypeError: Cannot read 'foo' at app.js:12:7")
    "TypeError: Cannot read 'VAR' at app.js:X:X"
    """
    for pattern, replacement in _NORMALISERS:
        text = pattern.sub(replacement, text)
    return text.strip()


@dataclass(frozen=True)
class ErrorFingerprint:
    """Coarse ``type|operation`` category of an error message."""

    type: str
    operation: str

    @property
    def key(self) -> str:
        return f"{self.type}|{self.operation}"

    def __str__(self) -> str:
        return self.key


def extract_error_fingerprint(text: str) -> ErrorFingerprint:
    """Classify *text* into an :class:`ErrorFingerprint`.

    Unrecognised messages map to ``GENERIC_ERROR|unknown``.
    """
    message = text.strip()
    error_type = next(
        (name for pattern, name in _TYPE_PATTERNS if pattern.search(message)),
        "GENERIC_ERROR",
    )
    operation = next(
        (name for pattern, name in _OPERATION_PATTERNS if pattern.search(message)),
        "unknown",
    )
    return ErrorFingerprint(type=error_type, operation=operation)


def _validate_error_text(error_text: Any) -> str:
    if not isinstance(error_text, str) or not error_text.strip():
        raise ValidationError("error_text", "must be a non-empty string", error_text)
    return error_text


def _validate_fixed_files(fixed_files: Any) -> list[str]:
    if isinstance(fixed_files, str) or not isinstance(fixed_files, (list, tuple)):
        raise ValidationError("fixed_files", "must be a list of paths", fixed_files)
    paths: list[str] = []
    for item in fixed_files:
        path = validate_path(item, "fixed_files")
        if path not in paths:
            paths.append(path)
    return paths


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ErrorRecall:
    """Outcome of :meth:`ErrorFixLearner.record_error`."""

    error_neuron: Neuron
    fingerprint: ErrorFingerprint
    potential_fixes: list[RecallResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_neuron": self.error_neuron.to_dict(),
            "fingerprint": self.fingerprint.key,
            "potential_fixes": [fix.to_dict() for fix in self.potential_fixes],
        }


@dataclass
class ErrorResolution:
    """Outcome of :meth:`ErrorFixLearner.resolve_error`."""

    error_neuron: Neuron
    fingerprint: ErrorFingerprint
    fix_neurons: list[Neuron] = field(default_factory=list)
    created: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_neuron": self.error_neuron.to_dict(),
            "fingerprint": self.fingerprint.key,
            "fix_neurons": [n.to_dict() for n in self.fix_neurons],
            "created": self.created,
        }


# ---------------------------------------------------------------------------
# ErrorFixLearner
# ---------------------------------------------------------------------------


class ErrorFixLearner:
    """Learns which files fix which errors.

    Parameters
    ----------
    storage:
        An initialised :class:`~hebbian_memory.storage.Storage` instance.
    learning, retrieval, synapses:
        Shared engines; built from *storage* when omitted.
    config:
        Overrides the configuration carried by *storage*.
    """

    def __init__(
        self,
        storage: Storage,
        learning: LearningEngine | None = None,
        retrieval: RetrievalEngine | None = None,
        synapses: SynapseManager | None = None,
        config: HebbianConfig | None = None,
    ) -> None:
        self._storage = storage
        self._cfg = config or storage.config
        self._synapses = synapses or SynapseManager(storage, self._cfg)
        self._neurons = NeuronManager(storage, self._cfg)
        self._learning = learning or LearningEngine(storage, self._synapses, self._cfg)
        self._retrieval = retrieval or RetrievalEngine(
            storage, synapses=self._synapses, config=self._cfg
        )

    async def record_error(
        self,
        error_text: str,
        session_id: str,
        query: str | None = None,
    ) -> ErrorRecall:
        """Record an error and surface files previously linked to it.

        The normalised error and its fingerprint are recorded as ``error``
        neurons and wired together.  Candidate fixes come from a file-only
        recall seeded by both error neurons, merged with direct error->file
        links of at least ``error_fix.fix_min_weight``.

        Returns
        -------
        ErrorRecall
            The error neuron and up to ``error_fix.fix_limit`` fixes sorted
            by confidence.
        """
        error_text = _validate_error_text(error_text)
        if query is not None and not isinstance(query, str):
            raise ValidationError("query", "must be a string", query)
        session_id = validate_session_id(session_id)
        normalized = normalize_error(error_text)
        fingerprint = extract_error_fingerprint(error_text)
        efcfg = self._cfg.error_fix

        def _do_record(conn: sqlite3.Connection) -> tuple[Neuron, Neuron]:
            error_neuron = self._learning.record_in_conn(
                conn, normalized, "error", session_id, query
            )
            fp_neuron = self._learning.record_in_conn(
                conn, fingerprint.key, "error", session_id, normalized
            )
            for first, second in self._both_ways(error_neuron.id, fp_neuron.id):
                self._synapses.reinforce_floor_in_conn(
                    conn, first, second, efcfg.resolve_weight
                )
            return error_neuron, fp_neuron

        error_neuron, fp_neuron = await self._storage.execute_transaction(
            _do_record, operation="record_error"
        )

        seeds = {
            error_neuron.id: (1.0, ERROR_FIX_PATH),
            fp_neuron.id: (1.0, ERROR_FIX_PATH),
        }
        recalled = await self._retrieval.recall(
            normalized,
            neuron_type="file",
            limit=efcfg.fix_limit,
            token_budget=efcfg.fix_token_budget,
            session_id=session_id,
            extra_seeds=seeds,
        )
        fixes = await self._merge_direct_links(
            recalled, [error_neuron.id, fp_neuron.id]
        )
        log.debug(
            "record_error %r (%s): %d potential fixes",
            normalized,
            fingerprint.key,
            len(fixes),
        )
        return ErrorRecall(
            error_neuron=error_neuron,
            fingerprint=fingerprint,
            potential_fixes=fixes,
        )

    async def resolve_error(
        self,
        error_text: str,
        fixed_files: list[str],
        session_id: str,
        note: str | None = None,
    ) -> ErrorResolution:
        """Wire an error to the files that fixed it.

        Creates the error neuron if it was never recorded, records each fix
        file, and raises every error<->file and fingerprint->file synapse to
        at least ``error_fix.resolve_weight``.  *note* is appended to the
        error neuron's contexts.
        """
        error_text = _validate_error_text(error_text)
        paths = _validate_fixed_files(fixed_files)
        session_id = validate_session_id(session_id)
        if note is not None and not isinstance(note, str):
            raise ValidationError("note", "must be a string", note)
        note = note.strip() if note else None
        normalized = normalize_error(error_text)
        fingerprint = extract_error_fingerprint(error_text)
        floor = self._cfg.error_fix.resolve_weight

        def _do_resolve(conn: sqlite3.Connection) -> ErrorResolution:
            error_id, created = self._ensure_error(conn, normalized, session_id, note)
            fp_id, _ = self._ensure_error(conn, fingerprint.key, session_id, normalized)

            fix_neurons: list[Neuron] = []
            for path in paths:
                fix = self._learning.record_in_conn(conn, path, "file", session_id, note)
                fix_neurons.append(fix)
                for first, second in self._both_ways(error_id, fix.id):
                    self._synapses.reinforce_floor_in_conn(conn, first, second, floor)
                if fp_id != error_id:
                    self._synapses.reinforce_floor_in_conn(conn, fp_id, fix.id, floor)

            if note and not created:
                self._append_context(conn, error_id, note)

            row = conn.execute("SELECT * FROM neurons WHERE id = ?", (error_id,)).fetchone()
            return ErrorResolution(
                error_neuron=Neuron.from_row(row),
                fingerprint=fingerprint,
                fix_neurons=fix_neurons,
                created=created,
            )

        resolution = await self._storage.execute_transaction(
            _do_resolve, operation="resolve_error"
        )
        log.info(
            "Resolved error %r with %d fix file(s)%s",
            normalized,
            len(resolution.fix_neurons),
            " (new error)" if resolution.created else "",
        )
        return resolution

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _both_ways(self, first_id: int, second_id: int) -> list[tuple[int, int]]:
        """Edge keys linking two neurons in both directions (one key if undirected)."""
        if first_id == second_id:
            return []
        keys = {
            self._synapses.canonical(first_id, second_id),
            self._synapses.canonical(second_id, first_id),
        }
        return sorted(keys)

    def _ensure_error(
        self,
        conn: sqlite3.Connection,
        signature: str,
        session_id: str,
        context: str | None,
    ) -> tuple[int, bool]:
        """Id of the error neuron for *signature*, recording it if absent."""
        row = conn.execute(
            "SELECT id FROM neurons WHERE type = 'error' AND path = ?", (signature,)
        ).fetchone()
        if row is not None:
            return row["id"], False
        neuron = self._learning.record_in_conn(conn, signature, "error", session_id, context)
        return neuron.id, True

    def _append_context(self, conn: sqlite3.Connection, neuron_id: int, note: str) -> None:
        row = conn.execute("SELECT contexts FROM neurons WHERE id = ?", (neuron_id,)).fetchone()
        try:
            existing = json.loads(row["contexts"] or "[]")
        except json.JSONDecodeError:
            existing = []
        contexts = push_context(
            existing if isinstance(existing, list) else [],
            note,
            self._cfg.learning.context_cap,
        )
        conn.execute(
            "UPDATE neurons SET contexts = ? WHERE id = ?",
            (json.dumps(contexts, ensure_ascii=False), neuron_id),
        )

    async def _merge_direct_links(
        self,
        recalled: list[RecallResult],
        error_ids: list[int],
    ) -> list[RecallResult]:
        """Add file neurons directly wired to the error neurons.

        Direct link confidence is ``min(weight * (1 + myelination), 0.99)``;
        a fix found both ways keeps the higher confidence.  The merged list
        is ranked, then cut by ``fix_limit`` and ``fix_token_budget`` the same
        greedy way recall is: it stops at the first fix that would overflow.
        """
        efcfg = self._cfg.error_fix
        floor = self._cfg.recall.min_confidence
        merged: dict[int, RecallResult] = {r.neuron.id: r for r in recalled}

        neighbours = await self._synapses.get_neighbors_batch(
            error_ids, min_weight=efcfg.fix_min_weight
        )
        candidate_ids = sorted({nid for pairs in neighbours.values() for nid, _ in pairs})
        if candidate_ids:
            targets = await self._neurons.get_batch(candidate_ids)
            for error_id in error_ids:
                for neighbour_id, synapse in neighbours.get(error_id, []):
                    target = targets.get(neighbour_id)
                    if target is None or target.type != "file":
                        continue
                    confidence = min(synapse.weight * (1.0 + target.myelination), 0.99)
                    if confidence < floor:
                        continue
                    current = merged.get(target.id)
                    if current is not None and current.confidence >= confidence:
                        continue
                    cost = neuron_token_cost(target.type, target.path, target.contexts, self._cfg)
                    merged[target.id] = RecallResult(
                        neuron=target,
                        confidence=confidence,
                        estimated_tokens_saved=self._cfg.tokens.tokens_per_search + cost,
                        token_cost=cost,
                        activation_path=f"{ERROR_FIX_PATH} (resolved)",
                    )

        by_id = {r.neuron.id: r for r in merged.values()}
        ranked = rank_key_sort([(r.neuron, r.confidence) for r in merged.values()])
        fixes: list[RecallResult] = []
        spent = 0
        for neuron, _ in ranked:
            if len(fixes) >= efcfg.fix_limit:
                break
            fix = by_id[neuron.id]
            if spent + fix.token_cost > efcfg.fix_token_budget:
                break
            spent += fix.token_cost
            fixes.append(fix)
        return fixes

