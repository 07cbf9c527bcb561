"""Manifest validation package."""

from .manifest import ManifestValidator, ValidationReport
from .schema import iter_schema_errors

__all__ = ["ManifestValidator", "ValidationReport", "iter_schema_errors"]
