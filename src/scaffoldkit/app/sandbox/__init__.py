"""Setup script sandbox."""

from .loader import check_source, load_entry_point
from .service import SandboxContext, SandboxOutcome, SandboxState, SetupSandbox
from .toolkit import SetupToolkit, ToolkitState

__all__ = [
    "SandboxContext",
    "SandboxOutcome",
    "SandboxState",
    "SetupSandbox",
    "SetupToolkit",
    "ToolkitState",
    "check_source",
    "load_entry_point",
]
