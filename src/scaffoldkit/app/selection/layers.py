"""Partial selections contributed by each precedence layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from json import JSONDecodeError
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Optional

import yaml

from scaffoldkit.app.config.loader import ScaffoldConfig
from scaffoldkit.app.validation.schema import SELECTION_SCHEMA, iter_schema_errors
from scaffoldkit.domain.errors import ValidationError
from scaffoldkit.domain.manifest import TemplateManifest
from scaffoldkit.domain.selection import SelectionDocument

CHOICE_ENV_PREFIX = "SCAFFOLDKIT_CHOICE_"
PLACEHOLDER_ENV_PREFIX = "SCAFFOLDKIT_PLACEHOLDER_"


@dataclass(frozen=True)
class SelectionLayer:
    """One partial selection.

    ``strict`` layers must only name declared dimensions and placeholders;
    ambient layers (environment, shared config defaults) silently skip
    keys the template does not declare.
    """

    name: str
    choices: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    placeholders: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    strict: bool = True
    source: Optional[str] = None


def defaults_layer(manifest: TemplateManifest) -> SelectionLayer:
    choices = {}
    for dimension in manifest.dimensions.values():
        default = dimension.default_choice()
        if default is not None:
            choices[dimension.id] = default
    placeholders = {
        token: definition.default
        for token, definition in manifest.placeholders.items()
        if definition.has_default
    }
    return SelectionLayer("defaults", MappingProxyType(choices), MappingProxyType(placeholders), source="template.json")


def config_layers(config: ScaffoldConfig, template_id: str) -> List[SelectionLayer]:
    source = str(config.path) if config.path else None
    layers = [
        SelectionLayer("config", config.defaults.choices, config.defaults.placeholders, strict=False, source=source),
    ]
    specific = config.templates.get(template_id)
    if specific is not None:
        layers.append(SelectionLayer("config", specific.choices, specific.placeholders, strict=True, source=source))
    return layers


def env_key(dimension_or_token: str, prefix: str) -> str:
    return prefix + dimension_or_token.upper().replace("-", "_")


def env_layer(manifest: TemplateManifest, env: Mapping[str, str]) -> SelectionLayer:
    choices = {}
    for dimension_id in manifest.dimensions:
        key = env_key(dimension_id, CHOICE_ENV_PREFIX)
        if key in env:
            choices[dimension_id] = env[key]
    placeholders = {}
    for token in manifest.placeholders:
        key = env_key(token, PLACEHOLDER_ENV_PREFIX)
        if key in env:
            placeholders[token] = env[key]
    return SelectionLayer("env", MappingProxyType(choices), MappingProxyType(placeholders), strict=False, source="environment")


def document_layer(manifest: TemplateManifest, document: SelectionDocument, *, source: Optional[str] = None) -> SelectionLayer:
    if document.template_id != manifest.id:
        raise ValidationError(
            f"selection document targets '{document.template_id}' but the template is '{manifest.id}'",
            field="templateId",
            path=source,
        )
    return SelectionLayer("document", document.choices, document.placeholders, source=source)


def flag_layer(options: Iterable[str] = (), placeholders: Iterable[str] = ()) -> SelectionLayer:
    return SelectionLayer(
        "flags",
        MappingProxyType(_parse_assignments(options, "option")),
        MappingProxyType(_parse_assignments(placeholders, "placeholder")),
        source="command line",
    )


def _parse_assignments(items: Iterable[str], kind: str) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValidationError(f"{kind} override '{item}' must look like NAME=value", field=f"flags.{kind}")
        parsed[key] = value.strip()
    return parsed


def load_selection_document(path: Path) -> SelectionDocument:
    """Read a JSON or YAML selection document and check it against the schema."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"selection document {path} cannot be read: {exc}", field="<root>", path=str(path)) from exc
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            payload = yaml.safe_load(text)
        else:
            payload = json.loads(text)
    except (yaml.YAMLError, JSONDecodeError) as exc:
        raise ValidationError(f"selection document {path} cannot be parsed: {exc}", field="<root>", path=str(path)) from exc
    if not isinstance(payload, dict):
        raise ValidationError("selection document must be an object", field="<root>", path=str(path))
    for field_path, message in iter_schema_errors(payload, SELECTION_SCHEMA):
        raise ValidationError(f"{field_path}: {message}", field=field_path, path=str(path))
    return SelectionDocument.from_dict(payload)


__all__ = [
    "CHOICE_ENV_PREFIX",
    "PLACEHOLDER_ENV_PREFIX",
    "SelectionLayer",
    "config_layers",
    "defaults_layer",
    "document_layer",
    "env_key",
    "env_layer",
    "flag_layer",
    "load_selection_document",
]
