"""Central configuration for the Hebbian memory engine.

All policy constants (learning rates, decay rates, pruning epsilon, recall
thresholds, token costs) live here with documented defaults.  Values can be
overridden through environment variables prefixed with ``HEBBIAN_`` (nested
keys use double underscores, e.g. ``HEBBIAN_RECALL__MAX_HOPS=2``).

Usage::

    from hebbian_memory.config import get_config

    cfg = get_config()
    print(cfg.db_path)
    print(cfg.learning.learning_rate)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StorageConfig:
    """Connection and contention parameters for the SQLite store."""

    busy_timeout_ms: int = 5000
    """SQLite-level wait before a locked database raises ``OperationalError``."""

    busy_retries: int = 5
    """Application-level retries after SQLite's own busy timeout expires.
    When exhausted the operation fails with :class:`~hebbian_memory.exceptions.StoreBusy`."""

    busy_backoff_seconds: float = 0.05
    """Base delay for exponential backoff between retries (doubles each attempt)."""


@dataclass(frozen=True, slots=True)
class LearningConfig:
    """Parameters for neuron reinforcement and synapse co-activation."""

    myelin_seed: float = 0.1
    """Myelination of a freshly created neuron.  Decay never goes below it."""

    myelin_rate: float = 0.05
    """Saturating myelination step: ``m += myelin_rate * (myelin_max - m)``."""

    myelin_max: float = 0.95
    """Ceiling that myelination approaches but never exceeds."""

    learning_rate: float = 0.1
    """Saturating synapse step for ordinary co-activation."""

    co_activation_window: int = 25
    """Number of distinct recently-recorded neurons a new access wires to."""

    co_activation_seconds: int = 3600
    """Only accesses this recent (same session) belong to the window."""

    error_learning_boost: float = 2.0
    """Learning-rate multiplier when either endpoint is an error neuron."""

    hub_penalty_threshold: int = 20
    """Synapse degree above which a neuron counts as a hub."""

    hub_penalty_factor: float = 0.5
    """Learning-rate multiplier when either endpoint is a hub."""

    context_cap: int = 20
    """Maximum number of context strings kept per neuron."""

    directed: bool = False
    """Store ordered (earlier -> later) synapses instead of unordered pairs."""


@dataclass(frozen=True, slots=True)
class RecallConfig:
    """Parameters that govern seed selection and spreading activation."""

    min_query_length: int = 3
    max_seeds: int = 50
    keyword_min_length: int = 3
    stem_min_length: int = 4
    embedding_threshold: float = 0.25
    stem_match_floor: float = 0.5
    myelin_weight: float = 0.3
    myelin_cap: float = 0.5
    path_bonus: float = 0.4
    stem_bonus: float = 0.4
    max_hops: int = 3
    max_fan_out: int = 10
    fan_degree_cap: int = 50
    hop_decay: float = 0.85
    min_spread_weight: float = 0.1
    min_activation: float = 0.1
    min_confidence: float = 0.4
    default_limit: int = 5

    source_code_boost: float = 0.3
    """Seed amplifier bonus for paths with a source-code extension."""

    doc_penalty: float = 0.15
    """Seed amplifier reduction for paths with a documentation extension."""

    source_extensions: str = (
        ".py,.pyi,.ts,.tsx,.js,.jsx,.rs,.go,.swift,.java,.c,.cpp,.h,.hpp,.rb,.kt,.scala,.zig"
    )
    doc_extensions: str = ".md,.txt,.rst,.adoc,.doc,.docx"

    tool_spread_dampening: float = 0.3
    """Multiplier on activation leaving a tool neuron, so generic tools do not
    bridge unrelated files."""

    episodic_days: int = 7
    episodic_max_sessions: int = 10
    episodic_saturation: int = 5
    """Accesses within matching sessions that earn full episodic frequency."""

    episodic_merge_limit: int = 3


@dataclass(frozen=True, slots=True)
class DecayConfig:
    """Parameters for the homeostatic decay and pruning cycle."""

    synapse_decay_rate: float = 0.02
    """Fractional synapse weight loss per idle day."""

    myelin_decay_rate: float = 0.005
    """Fractional myelination loss per idle day."""

    prune_threshold: float = 0.05
    """Synapses weaker than this are deleted."""

    orphan_grace_days: int = 7
    """Idle days before an unconnected error/semantic neuron is deleted."""

    anti_recall_decay: float = 0.1
    """Fractional weight loss for synapses of a recalled but unopened neuron."""

    anti_recall_floor: float = 0.1
    """Anti-recall never weakens a synapse below this weight."""


@dataclass(frozen=True, slots=True)
class ConsolidationConfig:
    """Parameters for the sleep-replay consolidation pass."""

    shortcut_min_weight: float = 0.5
    shortcut_rate: float = 0.5
    max_shortcuts: int = 200
    max_intermediary_neighbors: int = 20
    replay_days: int = 7
    replay_min_accesses: int = 5
    replay_max_sessions: int = 5
    replay_rate: float = 0.01
    cross_session_min_sessions: int = 3
    cross_session_weight: float = 0.15
    cross_session_bump: float = 0.05
    cross_session_weak_below: float = 0.2
    demote_after_days: int = 30
    demote_max_weight: float = 0.1
    hyperactive_multiplier: float = 3.0
    hyperactive_dampen: float = 0.9
    homeostasis_weight_target: float = 0.35
    episodic_retention_days: int = 30
    episodic_max_rows: int = 5000


@dataclass(frozen=True, slots=True)
class ErrorFixConfig:
    """Parameters for error -> fix learning."""

    resolve_weight: float = 0.85
    """Minimum weight of an error <-> fix synapse after resolution."""

    fix_min_weight: float = 0.3
    """Direct error links weaker than this are not offered as fixes."""

    fix_limit: int = 5
    fix_token_budget: int = 5000


@dataclass(frozen=True, slots=True)
class TokenConfig:
    """Token cost estimates used for budgeting and savings reports."""

    tokens_per_file_read: int = 1500
    tokens_per_search: int = 500
    chars_per_token: int = 4
    superhighway_threshold: float = 0.5
    stale_daily_decay: float = 0.995


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class HebbianConfig:
    """Root configuration object for the Hebbian memory engine.

    All paths are stored as resolved :class:`~pathlib.Path` instances with
    ``~`` expanded.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.hebbian/memory.db"))
    backup_dir: Path = field(default_factory=lambda: Path("~/.hebbian/backups"))
    backup_count: int = 5
    backup_on_init: bool = True

    storage: StorageConfig = field(default_factory=StorageConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    recall: RecallConfig = field(default_factory=RecallConfig)
    decay: DecayConfig = field(default_factory=DecayConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    error_fix: ErrorFixConfig = field(default_factory=ErrorFixConfig)
    tokens: TokenConfig = field(default_factory=TokenConfig)

    def __post_init__(self) -> None:
        # Frozen dataclass: expand ~ through object.__setattr__.
        object.__setattr__(self, "db_path", Path(self.db_path).expanduser())
        object.__setattr__(self, "backup_dir", Path(self.backup_dir).expanduser())


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "HEBBIAN_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if target_type is bool:
        return target_type(value.strip().lower() in ("1", "true", "yes", "on"))  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                try:
                    kwargs[f.name] = _coerce(raw, field_type)
                except ValueError as exc:
                    raise ValueError(
                        f"Invalid value {raw!r} for {env_key}: {exc}"
                    ) from exc

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: HebbianConfig | None = None


def get_config(*, reload: bool = False) -> HebbianConfig:
    """Return the current :class:`HebbianConfig`.

    On the first call the config is built by merging defaults with any
    ``HEBBIAN_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.

    Parameters
    ----------
    reload:
        Force re-reading environment variables and rebuilding the config.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _load_dataclass(HebbianConfig, _ENV_PREFIX)
    return _cached_config
