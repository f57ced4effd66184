"""Typed access events accepted at the engine boundary.

Host adapters translate their tool-use payloads into :class:`AccessEvent`
before anything reaches the engine, so the core only ever sees a validated
``(type, path, context)`` triple.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from hebbian_memory.exceptions import ValidationError
from hebbian_memory.neurons import validate_neuron_type, validate_path


@dataclass(frozen=True)
class AccessEvent:
    """One observed access: a file read, a tool call, an error, a concept.

    Raises
    ------
    ValidationError
        At construction, on an unknown type, empty path or non-string context.
    """

    type: str
    path: str
    context: str | None = None

    def __post_init__(self) -> None:
        validate_neuron_type(self.type)
        # Frozen dataclass: normalise through object.__setattr__.
        object.__setattr__(self, "path", validate_path(self.path))
        if self.context is not None:
            if not isinstance(self.context, str):
                raise ValidationError("context", "must be a string", self.context)
            object.__setattr__(self, "context", self.context.strip() or None)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AccessEvent:
        """Build an event from an untyped adapter payload.

        ``type`` defaults to ``"file"``; ``query`` is accepted as an alias
        for ``context``.  Unknown keys are ignored.
        """
        if not isinstance(payload, Mapping):
            raise ValidationError("payload", "must be a mapping", payload)
        context = payload.get("context")
        if context is None:
            context = payload.get("query")
        return cls(
            type=payload.get("type", "file"),
            path=payload.get("path"),  # type: ignore[arg-type]
            context=context,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "path": self.path, "context": self.context}
