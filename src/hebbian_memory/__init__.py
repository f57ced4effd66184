"""hebbian_memory -- associative memory that learns which files, tools and
errors matter to a coding agent.

Quick start::

    from hebbian_memory import HebbianEngine, Storage

    async def main():
        async with Storage() as store:
            engine = HebbianEngine(store, session_id="session-1")
            await engine.record("src/auth.py", "file", query="fix login redirect")
            results = await engine.recall("login redirect")

For lower-level access, import from submodules::

    from hebbian_memory.neurons import Neuron, NeuronManager, NEURON_TYPES
    from hebbian_memory.synapses import Synapse, SynapseManager
    from hebbian_memory.retrieval import RetrievalEngine, RecallResult
    from hebbian_memory.consolidation import ConsolidationEngine, ConsolidationResult
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from hebbian_memory.config import HebbianConfig, get_config
from hebbian_memory.consolidation import AntiRecallResult, ConsolidationResult, DecayResult
from hebbian_memory.engine import HebbianEngine
from hebbian_memory.error_fix import (
    ErrorFingerprint,
    ErrorRecall,
    ErrorResolution,
    extract_error_fingerprint,
    normalize_error,
)
from hebbian_memory.events import AccessEvent
from hebbian_memory.exceptions import (
    HebbianError,
    StoreBusy,
    StoreCorrupt,
    StoreError,
    StoreUnavailable,
    ValidationError,
)
from hebbian_memory.neurons import NEURON_TYPES, Neuron
from hebbian_memory.retrieval import RecallResult
from hebbian_memory.sessions import SessionSummary
from hebbian_memory.storage import Storage
from hebbian_memory.synapses import Synapse

__all__ = [
    "__version__",
    "AccessEvent",
    "AntiRecallResult",
    "ConsolidationResult",
    "DecayResult",
    "ErrorFingerprint",
    "ErrorRecall",
    "ErrorResolution",
    "HebbianConfig",
    "HebbianEngine",
    "HebbianError",
    "NEURON_TYPES",
    "Neuron",
    "RecallResult",
    "SessionSummary",
    "Storage",
    "StoreBusy",
    "StoreCorrupt",
    "StoreError",
    "StoreUnavailable",
    "Synapse",
    "ValidationError",
    "extract_error_fingerprint",
    "get_config",
    "normalize_error",
]
