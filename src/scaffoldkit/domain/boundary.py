"""Path confinement primitive used by the cache and the setup sandbox."""

from __future__ import annotations

import os
from pathlib import Path, PurePath
from typing import Callable, Optional, Union

from .errors import SandboxError

PathLike = Union[str, PurePath]
ViolationHook = Callable[[str, str, str], None]


class BoundaryValidator:
    """Decide whether a candidate path stays inside a root directory.

    Candidates may be relative (joined onto the root), absolute, or pass
    through symlinks; the decision is made on the fully resolved real path
    so ``..`` segments and links pointing outside the root are caught
    before any I/O happens. Violations are raised, never clamped.
    """

    def __init__(self, root: PathLike, *, on_violation: Optional[ViolationHook] = None) -> None:
        self._root = Path(os.path.realpath(os.fspath(root)))
        self._on_violation = on_violation

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, candidate: PathLike, *, capability: str = "path", allow_root: bool = False) -> Path:
        """Return the real absolute path for ``candidate`` or raise SandboxError."""
        if not isinstance(candidate, (str, PurePath)):
            self._reject(capability, repr(candidate), "path must be a string")
        raw = os.fspath(candidate)
        if "\x00" in raw:
            self._reject(capability, raw.replace("\x00", "\\0"), "path contains a null byte")
        if not raw.strip() and not allow_root:
            self._reject(capability, raw, "path is empty")
        resolved = Path(os.path.realpath(os.path.join(self._root, raw)))
        if not self._contains(resolved):
            self._reject(capability, raw, f"resolves outside {self._root}")
        if resolved == self._root and not allow_root:
            self._reject(capability, raw, "path refers to the boundary root itself")
        return resolved

    def is_within(self, candidate: PathLike) -> bool:
        raw = os.fspath(candidate)
        if "\x00" in raw:
            return False
        return self._contains(Path(os.path.realpath(os.path.join(self._root, raw))))

    def relative(self, candidate: PathLike, *, capability: str = "path") -> str:
        resolved = self.resolve(candidate, capability=capability, allow_root=True)
        return resolved.relative_to(self._root).as_posix()

    def _contains(self, resolved: Path) -> bool:
        return resolved == self._root or self._root in resolved.parents

    def _reject(self, capability: str, raw: str, reason: str) -> None:
        if self._on_violation is not None:
            self._on_violation(capability, raw, reason)
        raise SandboxError(
            f"{capability}: path '{raw}' rejected ({reason})",
            capability=capability,
            path=raw,
            root=str(self._root),
        )


__all__ = ["BoundaryValidator"]
