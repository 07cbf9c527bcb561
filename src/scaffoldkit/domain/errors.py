"""Error taxonomy shared by every scaffolding stage."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Sequence


class ScaffoldError(RuntimeError):
    """Base class for errors surfaced through the pipeline result.

    ``kind`` is the stable discriminator reported to callers; ``context``
    carries the structured fields (path, dimension, cache key, capability)
    needed to build an actionable message.
    """

    kind = "error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {key: value for key, value in context.items() if value is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "context": dict(self.context)}


class ResolutionError(ScaffoldError):
    """Template reference could not be parsed or located."""

    kind = "resolution"


class CacheError(ScaffoldError):
    """Clone, fetch, lock or verification of a cache entry failed."""

    kind = "cache"

    def __init__(self, message: str, *, cache_key: str | None = None, **context: Any) -> None:
        super().__init__(message, cache_key=cache_key, **context)
        self.cache_key = cache_key


class ValidationError(ScaffoldError):
    """Manifest, configuration or override failed validation."""

    kind = "validation"

    def __init__(self, message: str, *, field: str | None = None, **context: Any) -> None:
        super().__init__(message, field=field, **context)
        self.field = field


class SelectionConflictError(ScaffoldError):
    """Merged selection violates a gate, requires or conflicts rule."""

    kind = "selection-conflict"

    def __init__(
        self,
        message: str,
        *,
        dimension: str,
        values: Sequence[str],
        rule: str | None = None,
        violations: Iterable[Any] = (),
        **context: Any,
    ) -> None:
        super().__init__(message, dimension=dimension, values=list(values), rule=rule, **context)
        self.dimension = dimension
        self.values = tuple(values)
        self.rule = rule
        self.violations = tuple(violations)


class SandboxError(ScaffoldError):
    """Setup script failed or a capability call was rejected."""

    kind = "sandbox"

    def __init__(
        self,
        message: str,
        *,
        capability: str | None = None,
        path: str | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, capability=capability, path=path, **context)
        self.capability = capability
        self.path = path


class MaterializationError(ScaffoldError):
    """Template files could not be written into the project directory."""

    kind = "materialization"


class CancelledError(ScaffoldError):
    """The invocation was cancelled by the caller."""

    kind = "cancelled"


__all__ = [
    "ScaffoldError",
    "ResolutionError",
    "CacheError",
    "ValidationError",
    "SelectionConflictError",
    "SandboxError",
    "MaterializationError",
    "CancelledError",
]
