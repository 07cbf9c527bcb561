"""Load a template's ``_setup.py`` into a restricted namespace."""

from __future__ import annotations

import ast
import builtins
from pathlib import Path
from typing import Any, Callable, Dict

from scaffoldkit.domain.errors import SandboxError

ENTRY_POINT = "setup"

SAFE_BUILTINS = (
    "abs",
    "all",
    "any",
    "bool",
    "dict",
    "enumerate",
    "filter",
    "float",
    "int",
    "isinstance",
    "len",
    "list",
    "map",
    "max",
    "min",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "Exception",
    "KeyError",
    "LookupError",
    "RuntimeError",
    "TypeError",
    "ValueError",
)

_FORBIDDEN_NODES = (
    ast.Import,
    ast.ImportFrom,
    ast.Global,
    ast.Nonlocal,
    ast.ClassDef,
    ast.AsyncFunctionDef,
    ast.Await,
)

# Frame, code and traceback attributes reach interpreter state outside the script.
INTROSPECTION_ATTRIBUTES = frozenset(
    {
        "ag_await",
        "ag_code",
        "ag_frame",
        "cr_await",
        "cr_code",
        "cr_frame",
        "cr_origin",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "f_trace",
        "gi_code",
        "gi_frame",
        "gi_yieldfrom",
        "tb_frame",
        "tb_next",
    }
)
INTROSPECTION_PREFIXES = ("co_",)


def _safe_builtins() -> Dict[str, Any]:
    return {name: getattr(builtins, name) for name in SAFE_BUILTINS}


def _is_introspection(attr: str) -> bool:
    return attr in INTROSPECTION_ATTRIBUTES or attr.startswith(INTROSPECTION_PREFIXES)


def check_source(source: str, filename: str) -> ast.Module:
    """Parse ``source`` and reject constructs outside the capability API."""
    try:
        tree = ast.parse(source, filename=filename)
    except SyntaxError as exc:
        raise SandboxError(f"{filename}:{exc.lineno}: syntax error: {exc.msg}", capability="loader", path=filename) from exc
    for node in ast.walk(tree):
        line = getattr(node, "lineno", "?")
        if isinstance(node, _FORBIDDEN_NODES):
            raise SandboxError(
                f"{filename}:{line}: '{type(node).__name__}' statements are not allowed in setup scripts",
                capability="loader",
                path=filename,
            )
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise SandboxError(
                f"{filename}:{line}: access to private attribute '{node.attr}' is not allowed",
                capability="loader",
                path=filename,
            )
        if isinstance(node, ast.Attribute) and _is_introspection(node.attr):
            raise SandboxError(
                f"{filename}:{line}: access to interpreter attribute '{node.attr}' is not allowed",
                capability="loader",
                path=filename,
            )
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise SandboxError(
                f"{filename}:{line}: name '{node.id}' is not allowed",
                capability="loader",
                path=filename,
            )
    return tree


def load_entry_point(script: Path) -> Callable[..., Any]:
    try:
        source = script.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise SandboxError(f"Unable to read setup script: {exc}", capability="loader", path=script.name) from exc
    tree = check_source(source, script.name)
    code = compile(tree, script.name, "exec")
    namespace: Dict[str, Any] = {"__builtins__": _safe_builtins(), "__name__": "scaffoldkit_setup"}
    exec(code, namespace)
    entry = namespace.get(ENTRY_POINT)
    if not callable(entry):
        raise SandboxError(
            f"{script.name} must define {ENTRY_POINT}(context, toolkit)",
            capability="loader",
            path=script.name,
        )
    return entry


__all__ = ["ENTRY_POINT", "INTROSPECTION_ATTRIBUTES", "SAFE_BUILTINS", "check_source", "load_entry_point"]
