"""Merge layered selections and evaluate gates, requires, conflicts and needs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from scaffoldkit.domain.canonical import PROJECT_NAME_TOKEN
from scaffoldkit.domain.errors import SelectionConflictError, ValidationError
from scaffoldkit.domain.manifest import FEATURES_DIMENSION, DimensionDef, PlaceholderDef, TemplateManifest
from scaffoldkit.domain.selection import MASK, SelectionDocument
from scaffoldkit.settings import RuntimeSettings
from scaffoldkit.utils.telemetry import record_structured_event

from .layers import SelectionLayer

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


@dataclass(frozen=True)
class Violation:
    dimension: str
    values: Tuple[str, ...]
    rule: str
    policy: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dimension": self.dimension,
            "values": list(self.values),
            "rule": self.rule,
            "policy": self.policy,
            "message": self.message,
        }


@dataclass(frozen=True)
class SelectionResult:
    document: SelectionDocument
    warnings: Tuple[str, ...] = ()


class SelectionResolver:
    """Fold selection layers left to right; the last writer wins per key."""

    def __init__(self, settings: RuntimeSettings | None = None) -> None:
        self._settings = settings

    def resolve(
        self,
        manifest: TemplateManifest,
        layers: Sequence[SelectionLayer],
        *,
        project_name: Optional[str] = None,
    ) -> SelectionResult:
        choices: Dict[str, Any] = {}
        placeholders: Dict[str, Any] = {}
        sources: Dict[str, str] = {}
        for layer in layers:
            self._apply_layer(manifest, layer, choices, placeholders, sources)

        if project_name and PROJECT_NAME_TOKEN in manifest.placeholders and PROJECT_NAME_TOKEN not in placeholders:
            placeholders[PROJECT_NAME_TOKEN] = project_name
            sources[f"placeholders.{PROJECT_NAME_TOKEN}"] = "project"
        _require_placeholders(manifest, placeholders)

        warnings = self._evaluate(manifest, choices)
        sensitive = sorted(token for token in placeholders if manifest.placeholders[token].sensitive)
        metadata: Dict[str, Any] = {
            "sources": sources,
            "layers": [layer.name for layer in layers],
            "sensitiveTokens": sensitive,
            "warnings": list(warnings),
        }
        if project_name:
            metadata["projectName"] = project_name
        document = SelectionDocument(
            template_id=manifest.id,
            choices=choices,
            placeholders=placeholders,
            metadata=metadata,
        )
        if self._settings is not None:
            record_structured_event(
                self._settings,
                "selection.resolved",
                payload=document.to_dict(mask_sensitive=True),
                component="selection",
                status="warn" if warnings else "ok",
            )
        return SelectionResult(document=document, warnings=tuple(warnings))

    def check(self, manifest: TemplateManifest, document: SelectionDocument) -> Tuple[str, ...]:
        """Re-validate a frozen document; returns warnings or raises like ``resolve``."""
        if document.template_id != manifest.id:
            raise ValidationError(
                f"selection document targets '{document.template_id}' but the template is '{manifest.id}'",
                field="templateId",
            )
        choices: Dict[str, Any] = {}
        for dimension_id, raw in document.choices.items():
            definition = manifest.dimensions.get(dimension_id)
            if definition is None:
                raise ValidationError(f"unknown dimension '{dimension_id}'", field=f"choices.{dimension_id}")
            choices[dimension_id] = normalize_choice(definition, raw, f"choices.{dimension_id}")
        placeholders: Dict[str, Any] = {}
        for token, raw in document.placeholders.items():
            definition = manifest.placeholders.get(token)
            if definition is None:
                raise ValidationError(f"unknown placeholder '{token}'", field=f"placeholders.{token}")
            placeholders[token] = coerce_placeholder(definition, raw, f"placeholders.{token}")
        _require_placeholders(manifest, placeholders)
        return tuple(self._evaluate(manifest, choices))

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def _apply_layer(
        self,
        manifest: TemplateManifest,
        layer: SelectionLayer,
        choices: Dict[str, Any],
        placeholders: Dict[str, Any],
        sources: Dict[str, str],
    ) -> None:
        for dimension_id, raw in layer.choices.items():
            field = f"{layer.name}.choices.{dimension_id}"
            definition = manifest.dimensions.get(dimension_id)
            if definition is None:
                if layer.strict:
                    raise ValidationError(
                        f"{layer.name} selects unknown dimension '{dimension_id}'",
                        field=field,
                        path=layer.source,
                    )
                continue
            if raw is None:
                choices.pop(dimension_id, None)
                sources.pop(f"choices.{dimension_id}", None)
                continue
            choices[dimension_id] = normalize_choice(definition, raw, field, source=layer.source)
            sources[f"choices.{dimension_id}"] = layer.name
        for token, raw in layer.placeholders.items():
            field = f"{layer.name}.placeholders.{token}"
            definition = manifest.placeholders.get(token)
            if definition is None:
                if layer.strict:
                    raise ValidationError(
                        f"{layer.name} sets unknown placeholder '{token}'",
                        field=field,
                        path=layer.source,
                    )
                continue
            placeholders[token] = coerce_placeholder(definition, raw, field, source=layer.source)
            sources[f"placeholders.{token}"] = layer.name

    # ------------------------------------------------------------------
    # Constraint evaluation
    # ------------------------------------------------------------------

    def _evaluate(self, manifest: TemplateManifest, choices: Mapping[str, Any]) -> List[str]:
        violations = list(_gate_violations(manifest, choices))
        for definition in manifest.dimensions.values():
            violations.extend(_relation_violations(definition, _selected(choices, definition.id)))
        violations.extend(_needs_violations(manifest, choices))
        errors = [item for item in violations if item.policy == "error"]
        if errors:
            first = errors[0]
            raise SelectionConflictError(
                first.message,
                dimension=first.dimension,
                values=first.values,
                rule=first.rule,
                violations=[item.to_dict() for item in errors],
            )
        return [item.message for item in violations]


def normalize_choice(definition: DimensionDef, raw: Any, field: str, *, source: Optional[str] = None) -> Any:
    if definition.is_multi:
        if isinstance(raw, str):
            items = [part.strip() for part in raw.split(",")]
        elif isinstance(raw, (list, tuple)):
            items = [item.strip() if isinstance(item, str) else item for item in raw]
        else:
            raise ValidationError(f"dimension '{definition.id}' expects a list of values", field=field, path=source)
        result: List[str] = []
        for item in items:
            if item == "":
                continue
            _check_value(definition, item, field, source)
            if item not in result:
                result.append(item)
        return tuple(result)
    if isinstance(raw, (list, tuple)):
        if len(raw) != 1:
            raise ValidationError(
                f"dimension '{definition.id}' is single-select but received {len(raw)} values",
                field=field,
                path=source,
            )
        raw = raw[0]
    value = raw.strip() if isinstance(raw, str) else raw
    _check_value(definition, value, field, source)
    return value


def _check_value(definition: DimensionDef, value: Any, field: str, source: Optional[str]) -> None:
    if not isinstance(value, str) or value not in definition.values:
        raise ValidationError(
            f"'{value}' is not a value of dimension '{definition.id}' (expected one of {', '.join(definition.values)})",
            field=field,
            path=source,
        )


def coerce_placeholder(definition: PlaceholderDef, raw: Any, field: str, *, source: Optional[str] = None) -> Any:
    if definition.type == "string":
        if isinstance(raw, bool):
            return "true" if raw else "false"
        if isinstance(raw, (str, int, float)):
            return str(raw)
    elif definition.type == "number":
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return raw
        if isinstance(raw, str):
            text = raw.strip()
            try:
                return int(text)
            except ValueError:
                try:
                    return float(text)
                except ValueError:
                    pass
    elif definition.type == "boolean":
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str) and raw.strip().lower() in _TRUE | _FALSE:
            return raw.strip().lower() in _TRUE
    shown = MASK if definition.sensitive else repr(raw)
    raise ValidationError(
        f"placeholder {definition.token} expects a {definition.type} value, got {shown}",
        field=field,
        path=source,
    )


def _require_placeholders(manifest: TemplateManifest, placeholders: Mapping[str, Any]) -> None:
    for token, definition in manifest.placeholders.items():
        if not definition.required:
            continue
        value = placeholders.get(token)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(
                f"placeholder {token} is required but no value was supplied",
                field=f"placeholders.{token}",
            )


def _selected(choices: Mapping[str, Any], dimension_id: str) -> Tuple[str, ...]:
    value = choices.get(dimension_id)
    if value is None:
        return ()
    if isinstance(value, tuple):
        return value
    if isinstance(value, list):
        return tuple(value)
    return (value,)


def _gate_violations(manifest: TemplateManifest, choices: Mapping[str, Any]) -> Iterable[Violation]:
    platform_dimension = manifest.platform_dimension
    if platform_dimension is None:
        return
    for platform in _selected(choices, platform_dimension):
        gate = manifest.gates.get(platform)
        if gate is None:
            continue
        for dimension_id, allowed in gate.allowed.items():
            definition = manifest.dimensions[dimension_id]
            for value in _selected(choices, dimension_id):
                if value in allowed:
                    continue
                yield Violation(
                    dimension=dimension_id,
                    values=(platform, value),
                    rule="gate",
                    policy=definition.policy,
                    message=(
                        f"{platform_dimension} '{platform}' does not allow {dimension_id} '{value}' "
                        f"(allowed: {', '.join(allowed)})"
                    ),
                )


def _relation_violations(definition: DimensionDef, selected: Tuple[str, ...]) -> Iterable[Violation]:
    chosen = set(selected)
    reported: set = set()
    for value in selected:
        for required in definition.requires.get(value, ()):
            if required not in chosen:
                yield Violation(
                    dimension=definition.id,
                    values=(value, required),
                    rule="requires",
                    policy=definition.policy,
                    message=f"{definition.id} '{value}' requires '{required}' to be selected",
                )
        for conflicting in definition.conflicts.get(value, ()):
            pair = frozenset((value, conflicting))
            if conflicting in chosen and pair not in reported:
                reported.add(pair)
                yield Violation(
                    dimension=definition.id,
                    values=(value, conflicting),
                    rule="conflicts",
                    policy=definition.policy,
                    message=f"{definition.id} '{value}' conflicts with '{conflicting}'",
                )


def _needs_violations(manifest: TemplateManifest, choices: Mapping[str, Any]) -> Iterable[Violation]:
    for feature in _selected(choices, FEATURES_DIMENSION):
        spec = manifest.feature_specs.get(feature)
        if spec is None:
            continue
        for dimension_id, level in spec.needs.items():
            if level != "required":
                continue
            chosen = [value for value in _selected(choices, dimension_id) if value != "none"]
            if chosen:
                continue
            yield Violation(
                dimension=dimension_id,
                values=(feature,),
                rule="needs",
                policy=manifest.dimensions[dimension_id].policy,
                message=f"feature '{feature}' requires a {dimension_id} other than 'none' to be selected",
            )


__all__ = [
    "SelectionResolver",
    "SelectionResult",
    "Violation",
    "coerce_placeholder",
    "normalize_choice",
]
