"""Structural and semantic validation of template manifests."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from json import JSONDecodeError
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Tuple

from packaging.version import InvalidVersion, Version

from scaffoldkit.domain.canonical import normalize_canonical_variables
from scaffoldkit.domain.errors import ValidationError
from scaffoldkit.domain.manifest import (
    FEATURES_DIMENSION,
    MANIFEST_FILENAME,
    PlaceholderDef,
    TemplateManifest,
)

from .schema import iter_schema_errors

SUPPORTED_MAJOR = 1
MAX_VALUE_LENGTH = 50
_VALUE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_PYTHON_TYPES = {
    "string": (str,),
    "number": (int, float),
    "boolean": (bool,),
}


@dataclass(frozen=True)
class ValidationReport:
    manifest: TemplateManifest
    checksum: str
    warnings: Tuple[str, ...] = ()


class ManifestValidator:
    """Validate manifests once per process; accepted results are memoised.

    The memo is keyed by template root and the sha256 of the manifest
    bytes, so an edited manifest is validated again.
    """

    def __init__(self) -> None:
        self._accepted: Dict[Tuple[str, str], ValidationReport] = {}
        self._lock = Lock()

    def load(self, root: Path) -> ValidationReport:
        manifest_path = root / MANIFEST_FILENAME
        try:
            raw = manifest_path.read_bytes()
        except OSError as exc:
            raise ValidationError(f"Unable to read {manifest_path}: {exc}", field=MANIFEST_FILENAME, path=str(manifest_path)) from exc
        checksum = hashlib.sha256(raw).hexdigest()
        key = (str(root.resolve()), checksum)
        with self._lock:
            cached = self._accepted.get(key)
        if cached is not None:
            return cached
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, JSONDecodeError) as exc:
            raise ValidationError(
                f"{manifest_path} is not valid JSON: {exc}",
                field=MANIFEST_FILENAME,
                path=str(manifest_path),
            ) from exc
        report = self.validate(payload, checksum=checksum, source=str(manifest_path))
        with self._lock:
            self._accepted[key] = report
        return report

    def validate(self, payload: Any, *, checksum: str = "", source: str = "") -> ValidationReport:
        if not isinstance(payload, dict):
            raise ValidationError("manifest must be a JSON object", field="<root>", path=source or None)
        for field, message in iter_schema_errors(payload):
            raise ValidationError(f"{field}: {message}", field=field, path=source or None)
        _check_schema_version(payload["schemaVersion"])
        placeholders = _merge_canonical(payload)
        _check_placeholders(placeholders)
        warnings: List[str] = []
        dimensions = payload.get("dimensions") or {}
        for dimension_id, definition in dimensions.items():
            warnings.extend(_check_dimension(dimension_id, definition))
        manifest = TemplateManifest.from_dict({**payload, "placeholders": {}}).with_placeholders(placeholders)
        _check_gates(manifest, payload)
        warnings.extend(_check_feature_specs(payload))
        if not checksum:
            checksum = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()
        return ValidationReport(manifest=manifest, checksum=checksum, warnings=tuple(warnings))


def _check_schema_version(raw: str) -> None:
    try:
        version = Version(raw)
    except InvalidVersion as exc:
        raise ValidationError(f"schemaVersion '{raw}' is not a valid version", field="schemaVersion") from exc
    if version.major != SUPPORTED_MAJOR:
        raise ValidationError(
            f"schemaVersion {raw} is not supported (expected {SUPPORTED_MAJOR}.x)",
            field="schemaVersion",
        )


def _merge_canonical(payload: Mapping[str, Any]) -> Dict[str, PlaceholderDef]:
    declared = {
        token: PlaceholderDef.from_dict(token, item)
        for token, item in (payload.get("placeholders") or {}).items()
    }
    canonical = normalize_canonical_variables(payload.get("variables"))
    merged: Dict[str, PlaceholderDef] = dict(canonical)
    for token, definition in declared.items():
        existing = canonical.get(token)
        if existing is not None and existing.type != definition.type:
            raise ValidationError(
                f"placeholder {token} redeclares canonical variable with type '{definition.type}' (expected '{existing.type}')",
                field=f"placeholders.{token}.type",
            )
        merged[token] = definition
    return merged


def _check_placeholders(placeholders: Mapping[str, PlaceholderDef]) -> None:
    for token, definition in placeholders.items():
        if definition.default is None:
            continue
        expected = _PYTHON_TYPES[definition.type]
        value = definition.default
        if not isinstance(value, expected) or (definition.type == "number" and isinstance(value, bool)):
            raise ValidationError(
                f"default for placeholder {token} must be a {definition.type}",
                field=f"placeholders.{token}.default",
            )


def _check_dimension(dimension_id: str, definition: Mapping[str, Any]) -> List[str]:
    base = f"dimensions.{dimension_id}"
    values: List[str] = list(definition["values"])
    known = set(values)
    for index, value in enumerate(values):
        if not _VALUE_PATTERN.match(value) or len(value) > MAX_VALUE_LENGTH:
            raise ValidationError(
                f"value '{value}' must be 1-{MAX_VALUE_LENGTH} letters, digits, '-' or '_'",
                field=f"{base}.values[{index}]",
            )

    multi = definition.get("type", "single") == "multi"
    default = definition.get("default")
    if default is not None:
        if isinstance(default, list):
            if not multi:
                raise ValidationError("single-select default must be a string", field=f"{base}.default")
            for index, item in enumerate(default):
                if item not in known:
                    raise ValidationError(f"default '{item}' is not a declared value", field=f"{base}.default[{index}]")
        elif default not in known:
            raise ValidationError(f"default '{default}' is not a declared value", field=f"{base}.default")

    warnings: List[str] = []
    for relation in ("requires", "conflicts"):
        for value, targets in (definition.get(relation) or {}).items():
            field = f"{base}.{relation}.{value}"
            if value not in known:
                raise ValidationError(f"{relation} references unknown value '{value}'", field=field)
            if not targets:
                raise ValidationError(f"{relation} entry for '{value}' must list at least one value", field=field)
            for index, target in enumerate(targets):
                if target not in known:
                    raise ValidationError(
                        f"{relation} for '{value}' references unknown value '{target}'",
                        field=f"{field}[{index}]",
                    )
                if relation == "conflicts" and target == value:
                    raise ValidationError(f"'{value}' cannot conflict with itself", field=f"{field}[{index}]")
            if relation == "requires" and not multi and any(target != value for target in targets):
                warnings.append(
                    f"{field}: single-select dimension '{dimension_id}' cannot hold '{value}' together with "
                    f"{', '.join(t for t in targets if t != value)}; selecting '{value}' always violates it"
                )
    warnings.extend(_transitive_conflicts(dimension_id, definition.get("conflicts") or {}))
    return warnings


def _transitive_conflicts(dimension_id: str, conflicts: Mapping[str, List[str]]) -> List[str]:
    pairs = set()
    for value, targets in conflicts.items():
        for target in targets:
            pairs.add(frozenset((value, target)))
    neighbours: Dict[str, set] = {}
    for pair in pairs:
        left, right = tuple(pair)
        neighbours.setdefault(left, set()).add(right)
        neighbours.setdefault(right, set()).add(left)
    warnings: List[str] = []
    for middle in sorted(neighbours):
        ends = sorted(neighbours[middle])
        for i, first in enumerate(ends):
            for last in ends[i + 1:]:
                if frozenset((first, last)) not in pairs:
                    warnings.append(
                        f"dimensions.{dimension_id}.conflicts: chain {first} -> {middle} -> {last} is not transitive; "
                        f"'{first}' and '{last}' may still be selected together"
                    )
    return warnings


def _check_gates(manifest: TemplateManifest, payload: Mapping[str, Any]) -> None:
    gates = payload.get("gates") or {}
    if not gates:
        return
    platform_dimension = manifest.platform_dimension
    if platform_dimension is None or platform_dimension not in manifest.dimensions:
        raise ValidationError(
            "gates require a platform dimension (hints.platformDimension, a 'deployment' dimension, "
            "or a dimension listing every gate key)",
            field="hints.platformDimension",
        )
    platform_values = set(manifest.dimensions[platform_dimension].values)
    for platform, gate in gates.items():
        if platform not in platform_values:
            raise ValidationError(
                f"gate '{platform}' is not a value of dimension '{platform_dimension}'",
                field=f"gates.{platform}",
            )
        for dimension_id, allowed in gate["allowed"].items():
            field = f"gates.{platform}.allowed.{dimension_id}"
            dimension = manifest.dimensions.get(dimension_id)
            if dimension is None:
                raise ValidationError(f"gate references undeclared dimension '{dimension_id}'", field=field)
            for index, value in enumerate(allowed):
                if value not in dimension.values:
                    raise ValidationError(
                        f"gate allows '{value}' which is not a value of dimension '{dimension_id}'",
                        field=f"{field}[{index}]",
                    )


def _check_feature_specs(payload: Mapping[str, Any]) -> List[str]:
    dimensions = payload.get("dimensions") or {}
    feature_values = set((dimensions.get(FEATURES_DIMENSION) or {}).get("values", ()))
    warnings: List[str] = []
    for feature_id, spec in (payload.get("featureSpecs") or {}).items():
        for dimension_id in (spec.get("needs") or {}):
            if dimension_id not in dimensions:
                raise ValidationError(
                    f"feature '{feature_id}' needs undeclared dimension '{dimension_id}'",
                    field=f"featureSpecs.{feature_id}.needs.{dimension_id}",
                )
        if feature_values and feature_id not in feature_values:
            warnings.append(
                f"featureSpecs.{feature_id}: not a value of the '{FEATURES_DIMENSION}' dimension; its needs never activate"
            )
    return warnings


__all__ = ["ManifestValidator", "ValidationReport"]
