"""Run a template's setup script against a freshly materialized project."""

from __future__ import annotations

import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from scaffoldkit.domain.boundary import BoundaryValidator
from scaffoldkit.domain.errors import SandboxError
from scaffoldkit.domain.manifest import AUTHOR_ASSETS_DIRNAME, SETUP_SCRIPT_FILENAME, TemplateManifest
from scaffoldkit.domain.selection import SelectionDocument
from scaffoldkit.settings import RuntimeSettings
from scaffoldkit.utils.telemetry import record_exception, record_structured_event

from .loader import load_entry_point
from .toolkit import SetupToolkit, ToolkitState


class SandboxState(str, Enum):
    IDLE = "idle"
    PREPARED = "prepared"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TORN_DOWN = "torn-down"


_TRANSITIONS: Mapping[SandboxState, FrozenSet[SandboxState]] = MappingProxyType(
    {
        SandboxState.IDLE: frozenset({SandboxState.PREPARED, SandboxState.FAILED, SandboxState.TORN_DOWN}),
        SandboxState.PREPARED: frozenset({SandboxState.RUNNING, SandboxState.FAILED, SandboxState.TORN_DOWN}),
        SandboxState.RUNNING: frozenset({SandboxState.COMPLETED, SandboxState.FAILED}),
        SandboxState.COMPLETED: frozenset({SandboxState.TORN_DOWN}),
        SandboxState.FAILED: frozenset({SandboxState.TORN_DOWN}),
        SandboxState.TORN_DOWN: frozenset(),
    }
)


@dataclass(frozen=True)
class SandboxContext:
    """Read-only view of the invocation passed as ``context`` to setup scripts.

    Fields are plain values; filesystem access goes through the toolkit only.
    """

    project_dir: str
    project_name: str
    resolved_selections: SelectionDocument


@dataclass(frozen=True)
class SandboxOutcome:
    state: SandboxState
    ran: bool
    warnings: Tuple[str, ...] = ()
    logs: Tuple[Tuple[str, str], ...] = ()
    error: Optional[SandboxError] = None
    result: Any = None
    scratch_removed: bool = True

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "state": self.state.value,
            "ran": self.ran,
            "warnings": list(self.warnings),
            "logs": [{"level": level, "message": message} for level, message in self.logs],
            "scratchRemoved": self.scratch_removed,
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


class SetupSandbox:
    """One-shot lifecycle: Idle, Prepared, Running, Completed or Failed, TornDown.

    The toolkit is revoked and the scratch area removed on every exit path,
    including unexpected exceptions raised by the setup script.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        template_root: Path,
        manifest: TemplateManifest,
        context: SandboxContext,
        correlation_id: Optional[str] = None,
    ) -> None:
        self._settings = settings
        self._template_root = template_root
        self._manifest = manifest
        self._context = context
        self._correlation_id = correlation_id or uuid.uuid4().hex
        self._state = SandboxState.IDLE
        self._scratch: Optional[Path] = None
        self._toolkit_state: Optional[ToolkitState] = None

    @property
    def state(self) -> SandboxState:
        return self._state

    @property
    def script_path(self) -> Path:
        return self._template_root / SETUP_SCRIPT_FILENAME

    @property
    def scratch_dir(self) -> Optional[Path]:
        return self._scratch

    def has_script(self) -> bool:
        return self.script_path.is_file()

    def run(self) -> SandboxOutcome:
        if self._state is not SandboxState.IDLE:
            raise SandboxError(f"sandbox already used (state {self._state.value})", capability="sandbox")
        if not self.has_script():
            self._transition(SandboxState.TORN_DOWN)
            return SandboxOutcome(state=self._state, ran=False)

        started = time.perf_counter()
        error: Optional[SandboxError] = None
        result: Any = None
        try:
            try:
                toolkit = self._prepare()
                self._transition(SandboxState.RUNNING)
                entry = load_entry_point(self.script_path)
                result = entry(self._context, toolkit)
            except SandboxError as exc:
                error = exc
            except Exception as exc:
                error = SandboxError(
                    f"setup script raised {type(exc).__name__}: {exc}",
                    capability="setup",
                )
                error.__cause__ = exc
            if error is None:
                self._transition(SandboxState.COMPLETED)
            else:
                self._fail(error)
        finally:
            scratch_removed = self._teardown()

        logs = tuple(self._toolkit_state.logs) if self._toolkit_state else ()
        warnings: List[str] = [f"setup: {message}" for level, message in logs if level == "warn"]
        if error is not None:
            warnings.append(f"setup script failed: {error.message}")
        record_structured_event(
            self._settings,
            "sandbox.completed",
            payload={"ok": error is None, "warnings": len(warnings)},
            level="warn" if error else "info",
            status="warn" if error else "ok",
            component="sandbox",
            correlation_id=self._correlation_id,
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
        )
        return SandboxOutcome(
            state=self._state,
            ran=True,
            warnings=tuple(warnings),
            logs=logs,
            error=error,
            result=result,
            scratch_removed=scratch_removed,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _prepare(self) -> SetupToolkit:
        self._scratch = Path(tempfile.mkdtemp(prefix="scaffoldkit-sandbox-"))
        assets: Optional[BoundaryValidator] = None
        source_assets = self._template_root / AUTHOR_ASSETS_DIRNAME
        if source_assets.is_dir():
            staged = self._scratch / AUTHOR_ASSETS_DIRNAME
            try:
                shutil.copytree(source_assets, staged, symlinks=True)
            except OSError as exc:
                raise SandboxError(f"failed to stage author assets: {exc}", capability="prepare") from exc
            assets = BoundaryValidator(staged, on_violation=self._on_violation)
        boundary = BoundaryValidator(Path(self._context.project_dir), on_violation=self._on_violation)
        self._toolkit_state = ToolkitState(
            boundary,
            self._manifest,
            self._context.resolved_selections,
            assets=assets,
            log_sink=self._on_log,
        )
        self._transition(SandboxState.PREPARED)
        return SetupToolkit(self._toolkit_state)

    def _fail(self, error: SandboxError) -> None:
        record_exception(
            self._settings,
            "sandbox.failed",
            error.__cause__ or error,
            component="sandbox",
            correlation_id=self._correlation_id,
            payload={"capability": error.capability, "path": error.path},
        )
        self._transition(SandboxState.FAILED)

    def _teardown(self) -> bool:
        if self._toolkit_state is not None:
            self._toolkit_state.close()
        if self._state is SandboxState.RUNNING:
            self._state = SandboxState.FAILED
        removed = True
        if self._scratch is not None:
            shutil.rmtree(self._scratch, ignore_errors=True)
            removed = not self._scratch.exists()
        self._transition(SandboxState.TORN_DOWN)
        return removed

    def _transition(self, target: SandboxState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise SandboxError(
                f"invalid sandbox transition {self._state.value} -> {target.value}",
                capability="sandbox",
            )
        previous = self._state
        self._state = target
        record_structured_event(
            self._settings,
            "sandbox.state",
            payload={"from": previous.value, "to": target.value},
            level="debug",
            component="sandbox",
            correlation_id=self._correlation_id,
        )

    def _on_violation(self, capability: str, path: str, reason: str) -> None:
        record_structured_event(
            self._settings,
            "boundary.violation",
            payload={"capability": capability, "path": path, "reason": reason},
            level="warn",
            status="rejected",
            component="sandbox",
            correlation_id=self._correlation_id,
        )

    def _on_log(self, level: str, message: str) -> None:
        record_structured_event(
            self._settings,
            "sandbox.log",
            payload={"message": message},
            level=level,
            component="sandbox",
            correlation_id=self._correlation_id,
        )


__all__ = ["SandboxContext", "SandboxOutcome", "SandboxState", "SetupSandbox"]
