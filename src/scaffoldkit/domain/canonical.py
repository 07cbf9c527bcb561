"""Canonical placeholder variables usable without a manual declaration."""

from __future__ import annotations

import re
from dataclasses import replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping

from .errors import ValidationError
from .manifest import PlaceholderDef

_NAME_PATTERN = re.compile(r"^[a-z_]+$")
_OVERRIDABLE = ("description", "required", "default", "sensitive")

CANONICAL_VARIABLES: Mapping[str, PlaceholderDef] = MappingProxyType(
    {
        "author": PlaceholderDef(
            token="AUTHOR",
            required=True,
            description="Author name recorded in generated documentation and metadata.",
        ),
        "license": PlaceholderDef(
            token="LICENSE",
            default="MIT",
            description="License identifier applied to generated project content.",
        ),
        "project_name": PlaceholderDef(
            token="PROJECT_NAME",
            description="Name of the generated project; defaults to the target directory name.",
        ),
    }
)

CANONICAL_TOKENS = frozenset(item.token for item in CANONICAL_VARIABLES.values())
PROJECT_NAME_TOKEN = "PROJECT_NAME"


def canonical_by_token(token: str) -> PlaceholderDef | None:
    for definition in CANONICAL_VARIABLES.values():
        if definition.token == token:
            return definition
    return None


def normalize_canonical_variables(entries: Iterable[Mapping[str, Any]] | None) -> Dict[str, PlaceholderDef]:
    """Turn manifest ``variables`` entries into placeholder definitions keyed by token."""
    if entries is None:
        return {}
    result: Dict[str, PlaceholderDef] = {}
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        field = f"variables[{index}]"
        if not isinstance(entry, Mapping):
            raise ValidationError("canonical variable entries must be objects", field=field)
        name = str(entry.get("name", "")).strip().lower()
        if not _NAME_PATTERN.match(name):
            raise ValidationError(f"invalid canonical variable name {entry.get('name')!r}", field=f"{field}.name")
        if name not in CANONICAL_VARIABLES:
            raise ValidationError(f"unknown canonical variable '{name}'", field=f"{field}.name")
        if name in seen:
            raise ValidationError(f"duplicate canonical variable '{name}'", field=f"{field}.name")
        seen.add(name)
        definition = CANONICAL_VARIABLES[name]
        if "required" in entry:
            definition = replace(definition, required=bool(entry["required"]))
        overrides = entry.get("overrides") or {}
        if not isinstance(overrides, Mapping):
            raise ValidationError("canonical variable overrides must be an object", field=f"{field}.overrides")
        unknown = sorted(set(overrides) - set(_OVERRIDABLE))
        if unknown:
            raise ValidationError(
                f"unsupported override(s) {', '.join(unknown)} for canonical variable '{name}'",
                field=f"{field}.overrides",
            )
        definition = replace(definition, **{key: overrides[key] for key in _OVERRIDABLE if key in overrides})
        result[definition.token] = definition
    return result


__all__ = [
    "CANONICAL_TOKENS",
    "CANONICAL_VARIABLES",
    "PROJECT_NAME_TOKEN",
    "canonical_by_token",
    "normalize_canonical_variables",
]
