"""Frozen selection document produced by the selection resolver."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Tuple, Union

SELECTION_SCHEMA_VERSION = "1.0.0"
MASK = "***"

Choice = Union[str, Tuple[str, ...]]


def _deep_freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _deep_freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_deep_freeze(item) for item in value)
    if isinstance(value, set):
        return tuple(sorted(value))
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class SelectionDocument:
    template_id: str
    choices: Mapping[str, Choice] = field(default_factory=dict)
    placeholders: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)
    schema_version: str = SELECTION_SCHEMA_VERSION

    def __post_init__(self) -> None:
        object.__setattr__(self, "choices", _deep_freeze(self.choices))
        object.__setattr__(self, "placeholders", _deep_freeze(self.placeholders))
        object.__setattr__(self, "metadata", _deep_freeze(self.metadata))

    @property
    def sensitive_tokens(self) -> Tuple[str, ...]:
        return tuple(self.metadata.get("sensitiveTokens", ()))

    def selected_values(self, dimension: str) -> Tuple[str, ...]:
        value = self.choices.get(dimension)
        if value is None:
            return ()
        if isinstance(value, tuple):
            return value
        return (value,)

    def is_selected(self, dimension: str, value: str) -> bool:
        return value in self.selected_values(dimension)

    def to_dict(self, *, mask_sensitive: bool = False) -> Dict[str, Any]:
        placeholders = _thaw(self.placeholders)
        if mask_sensitive:
            for token in self.sensitive_tokens:
                if token in placeholders:
                    placeholders[token] = MASK
        return {
            "schemaVersion": self.schema_version,
            "templateId": self.template_id,
            "choices": _thaw(self.choices),
            "placeholders": placeholders,
            "metadata": _thaw(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SelectionDocument":
        return cls(
            template_id=data["templateId"],
            choices=dict(data.get("choices") or {}),
            placeholders=dict(data.get("placeholders") or {}),
            metadata=dict(data.get("metadata") or {}),
            schema_version=str(data.get("schemaVersion", SELECTION_SCHEMA_VERSION)),
        )


__all__ = ["Choice", "MASK", "SELECTION_SCHEMA_VERSION", "SelectionDocument"]
