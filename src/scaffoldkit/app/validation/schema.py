"""JSON schema helpers for template manifests and selection documents."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Iterator, Mapping, Tuple

from jsonschema import Draft202012Validator

from scaffoldkit.resources import load_schema

MANIFEST_SCHEMA = "template_manifest.schema.json"
SELECTION_SCHEMA = "selection_document.schema.json"


@lru_cache(maxsize=None)
def _validator(name: str) -> Draft202012Validator:
    return Draft202012Validator(load_schema(name))


def _dotted(path) -> str:
    parts: list[str] = []
    for item in path:
        if isinstance(item, int):
            parts.append(f"[{item}]")
        elif parts:
            parts.append(f".{item}")
        else:
            parts.append(str(item))
    return "".join(parts) or "<root>"


def iter_schema_errors(payload: Mapping[str, Any], schema: str = MANIFEST_SCHEMA) -> Iterator[Tuple[str, str]]:
    """Yield (field path, message) pairs for schema issues, ordered by path."""
    validator = _validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda error: [str(item) for item in error.absolute_path])
    for error in errors:
        yield _dotted(error.absolute_path), error.message


__all__ = ["MANIFEST_SCHEMA", "SELECTION_SCHEMA", "iter_schema_errors"]
