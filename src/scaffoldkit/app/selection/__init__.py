"""Selection merging and constraint evaluation."""

from .layers import (
    SelectionLayer,
    config_layers,
    defaults_layer,
    document_layer,
    env_layer,
    flag_layer,
    load_selection_document,
)
from .service import SelectionResolver, SelectionResult, Violation

__all__ = [
    "SelectionLayer",
    "SelectionResolver",
    "SelectionResult",
    "Violation",
    "config_layers",
    "defaults_layer",
    "document_layer",
    "env_layer",
    "flag_layer",
    "load_selection_document",
]
