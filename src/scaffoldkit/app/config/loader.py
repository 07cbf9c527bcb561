"""YAML configuration: registries, cache policy and default selections."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import yaml

from scaffoldkit.domain.errors import ValidationError
from scaffoldkit.settings import RuntimeSettings

CONFIG_ENV = "SCAFFOLDKIT_CONFIG"
PROJECT_CONFIG_FILENAME = ".scaffoldkit.yaml"
KNOWN_KEYS = ("registries", "cache", "defaults", "templates")
_REGISTRY_NAME = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


@dataclass(frozen=True)
class SelectionDefaults:
    choices: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    placeholders: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class ScaffoldConfig:
    path: Optional[Path] = None
    registries: Mapping[str, Mapping[str, str]] = field(default_factory=lambda: MappingProxyType({}))
    cache_ttl_seconds: Optional[int] = None
    defaults: SelectionDefaults = field(default_factory=SelectionDefaults)
    templates: Mapping[str, SelectionDefaults] = field(default_factory=lambda: MappingProxyType({}))


def candidate_paths(cwd: Path, settings: RuntimeSettings, env: Mapping[str, str]) -> List[Path]:
    override = env.get(CONFIG_ENV)
    if override:
        return [Path(override).expanduser()]
    return [cwd / PROJECT_CONFIG_FILENAME, settings.user_config_file]


def load_config(
    cwd: Path,
    settings: RuntimeSettings,
    env: Mapping[str, str] | None = None,
) -> ScaffoldConfig:
    """Load the first existing configuration file; no file means an empty config."""
    env = os.environ if env is None else env
    candidates = candidate_paths(cwd, settings, env)
    if env.get(CONFIG_ENV) and not candidates[0].exists():
        raise ValidationError(f"{CONFIG_ENV} points to missing file {candidates[0]}", field=CONFIG_ENV)
    for path in candidates:
        if path.is_file():
            return parse_config_file(path)
    return ScaffoldConfig()


def parse_config_file(path: Path) -> ScaffoldConfig:
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValidationError(f"configuration {path} is not valid YAML: {exc}", field="<root>", path=str(path)) from exc
    except OSError as exc:
        raise ValidationError(f"configuration {path} cannot be read: {exc}", field="<root>", path=str(path)) from exc
    return parse_config(payload or {}, source=path)


def parse_config(payload: Any, *, source: Optional[Path] = None) -> ScaffoldConfig:
    location = str(source) if source else None
    if not isinstance(payload, dict):
        raise ValidationError("configuration must be a mapping", field="<root>", path=location)
    unknown = sorted(set(payload) - set(KNOWN_KEYS))
    if unknown:
        raise ValidationError(
            f"unknown configuration key(s): {', '.join(unknown)}",
            field=unknown[0],
            path=location,
        )
    return ScaffoldConfig(
        path=source,
        registries=_parse_registries(payload.get("registries"), location),
        cache_ttl_seconds=_parse_cache(payload.get("cache"), location),
        defaults=_parse_defaults(payload.get("defaults"), "defaults", location),
        templates=MappingProxyType(
            {
                str(template_id): _parse_defaults(section, f"templates.{template_id}", location)
                for template_id, section in _mapping(payload.get("templates"), "templates", location).items()
            }
        ),
    )


def _mapping(value: Any, field_name: str, location: Optional[str]) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"'{field_name}' must be a mapping", field=field_name, path=location)
    return value


def _parse_registries(value: Any, location: Optional[str]) -> Mapping[str, Mapping[str, str]]:
    registries: Dict[str, Mapping[str, str]] = {}
    for name, entries in _mapping(value, "registries", location).items():
        field_name = f"registries.{name}"
        if not isinstance(name, str) or not _REGISTRY_NAME.match(name):
            raise ValidationError(f"invalid registry name {name!r}", field=field_name, path=location)
        templates: Dict[str, str] = {}
        for template_name, source in _mapping(entries, field_name, location).items():
            if not isinstance(source, str) or not source.strip():
                raise ValidationError(
                    f"registry entry '{name}/{template_name}' must map to a non-empty source string",
                    field=f"{field_name}.{template_name}",
                    path=location,
                )
            templates[str(template_name)] = source.strip()
        registries[name] = MappingProxyType(templates)
    return MappingProxyType(registries)


def _parse_cache(value: Any, location: Optional[str]) -> Optional[int]:
    section = _mapping(value, "cache", location)
    unknown = sorted(set(section) - {"ttl_seconds"})
    if unknown:
        raise ValidationError(f"unknown cache option(s): {', '.join(unknown)}", field=f"cache.{unknown[0]}", path=location)
    ttl = section.get("ttl_seconds")
    if ttl is None:
        return None
    if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl < 0:
        raise ValidationError("cache.ttl_seconds must be a non-negative integer", field="cache.ttl_seconds", path=location)
    return ttl


def _parse_defaults(value: Any, field_name: str, location: Optional[str]) -> SelectionDefaults:
    section = _mapping(value, field_name, location)
    unknown = sorted(set(section) - {"choices", "placeholders"})
    if unknown:
        raise ValidationError(
            f"unknown key(s) under {field_name}: {', '.join(unknown)}",
            field=f"{field_name}.{unknown[0]}",
            path=location,
        )
    return SelectionDefaults(
        choices=MappingProxyType(dict(_mapping(section.get("choices"), f"{field_name}.choices", location))),
        placeholders=MappingProxyType(dict(_mapping(section.get("placeholders"), f"{field_name}.placeholders", location))),
    )


__all__ = [
    "CONFIG_ENV",
    "PROJECT_CONFIG_FILENAME",
    "ScaffoldConfig",
    "SelectionDefaults",
    "load_config",
    "parse_config",
    "parse_config_file",
]
