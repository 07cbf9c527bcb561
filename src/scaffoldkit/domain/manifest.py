"""Immutable template manifest model."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

MANIFEST_FILENAME = "template.json"
SETUP_SCRIPT_FILENAME = "_setup.py"
AUTHOR_ASSETS_DIRNAME = "__scaffold__"

PLACEHOLDER_TYPES = ("string", "number", "boolean")
DIMENSION_TYPES = ("single", "multi")
POLICIES = ("warn", "error")
NEED_LEVELS = ("required", "optional", "none")
PLACEHOLDER_FORMATS = {
    "unicode": ("⦃", "⦄"),
    "mustache": ("{{", "}}"),
}
FEATURES_DIMENSION = "features"
DEFAULT_PLATFORM_DIMENSION = "deployment"

_EMPTY: Mapping[str, Any] = MappingProxyType({})


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


def _freeze_lists(mapping: Mapping[str, Iterable[str]] | None) -> Mapping[str, Tuple[str, ...]]:
    return MappingProxyType({key: tuple(values) for key, values in (mapping or {}).items()})


@dataclass(frozen=True)
class PlaceholderDef:
    token: str
    type: str = "string"
    required: bool = False
    sensitive: bool = False
    default: Any = None
    description: str = ""

    @property
    def has_default(self) -> bool:
        return self.default is not None

    @classmethod
    def from_dict(cls, token: str, data: Mapping[str, Any]) -> "PlaceholderDef":
        return cls(
            token=token,
            type=data.get("type", "string"),
            required=bool(data.get("required", False)),
            sensitive=bool(data.get("sensitive", False)),
            default=data.get("default"),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class DimensionDef:
    id: str
    type: str = "single"
    values: Tuple[str, ...] = ()
    default: Any = None
    requires: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: _EMPTY)
    conflicts: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: _EMPTY)
    policy: str = "error"
    description: str = ""

    @property
    def is_multi(self) -> bool:
        return self.type == "multi"

    def default_choice(self) -> Any:
        if self.default is None:
            return () if self.is_multi else None
        if self.is_multi:
            if isinstance(self.default, (list, tuple)):
                return tuple(self.default)
            return (self.default,)
        return self.default

    @classmethod
    def from_dict(cls, dimension_id: str, data: Mapping[str, Any]) -> "DimensionDef":
        return cls(
            id=dimension_id,
            type=data.get("type", "single"),
            values=tuple(data.get("values", ())),
            default=data.get("default"),
            requires=_freeze_lists(data.get("requires")),
            conflicts=_freeze_lists(data.get("conflicts")),
            policy=data.get("policy", "error"),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class GateConstraint:
    platform: str
    allowed: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: _EMPTY)
    description: str = ""

    @classmethod
    def from_dict(cls, platform: str, data: Mapping[str, Any]) -> "GateConstraint":
        return cls(
            platform=platform,
            allowed=_freeze_lists(data.get("allowed")),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class FeatureSpec:
    id: str
    needs: Mapping[str, str] = field(default_factory=lambda: _EMPTY)
    label: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, feature_id: str, data: Mapping[str, Any]) -> "FeatureSpec":
        return cls(
            id=feature_id,
            needs=_freeze(data.get("needs")),
            label=data.get("label", ""),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class TemplateManifest:
    """Validated manifest; never mutated once the validator accepts it."""

    schema_version: str
    id: str
    name: str
    description: str = ""
    placeholders: Mapping[str, PlaceholderDef] = field(default_factory=lambda: _EMPTY)
    dimensions: Mapping[str, DimensionDef] = field(default_factory=lambda: _EMPTY)
    gates: Mapping[str, GateConstraint] = field(default_factory=lambda: _EMPTY)
    feature_specs: Mapping[str, FeatureSpec] = field(default_factory=lambda: _EMPTY)
    hints: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    placeholder_format: str = "unicode"

    @property
    def platform_dimension(self) -> Optional[str]:
        """Dimension whose value selects the active gate."""
        hinted = self.hints.get("platformDimension")
        if isinstance(hinted, str) and hinted:
            return hinted
        if DEFAULT_PLATFORM_DIMENSION in self.dimensions:
            return DEFAULT_PLATFORM_DIMENSION
        if not self.gates:
            return None
        platforms = set(self.gates)
        for dimension in self.dimensions.values():
            if platforms.issubset(dimension.values):
                return dimension.id
        return None

    @property
    def token_delimiters(self) -> Tuple[str, str]:
        return PLACEHOLDER_FORMATS[self.placeholder_format]

    def format_token(self, token: str) -> str:
        opening, closing = self.token_delimiters
        return f"{opening}{token}{closing}"

    def with_placeholders(self, extra: Mapping[str, PlaceholderDef]) -> "TemplateManifest":
        merged: Dict[str, PlaceholderDef] = dict(self.placeholders)
        for token, definition in extra.items():
            merged.setdefault(token, definition)
        return replace(self, placeholders=MappingProxyType(merged))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TemplateManifest":
        return cls(
            schema_version=str(data["schemaVersion"]),
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            placeholders=MappingProxyType(
                {token: PlaceholderDef.from_dict(token, item) for token, item in (data.get("placeholders") or {}).items()}
            ),
            dimensions=MappingProxyType(
                {key: DimensionDef.from_dict(key, item) for key, item in (data.get("dimensions") or {}).items()}
            ),
            gates=MappingProxyType(
                {key: GateConstraint.from_dict(key, item) for key, item in (data.get("gates") or {}).items()}
            ),
            feature_specs=MappingProxyType(
                {key: FeatureSpec.from_dict(key, item) for key, item in (data.get("featureSpecs") or {}).items()}
            ),
            hints=_freeze(data.get("hints")),
            placeholder_format=data.get("placeholderFormat", "unicode"),
        )


__all__ = [
    "AUTHOR_ASSETS_DIRNAME",
    "DIMENSION_TYPES",
    "FEATURES_DIMENSION",
    "MANIFEST_FILENAME",
    "NEED_LEVELS",
    "PLACEHOLDER_FORMATS",
    "PLACEHOLDER_TYPES",
    "POLICIES",
    "SETUP_SCRIPT_FILENAME",
    "DimensionDef",
    "FeatureSpec",
    "GateConstraint",
    "PlaceholderDef",
    "TemplateManifest",
]
