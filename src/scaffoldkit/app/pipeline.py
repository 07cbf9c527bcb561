"""Scaffolding pipeline: resolve, validate, select, materialize, run setup."""

from __future__ import annotations

import os
import shutil
import time
import uuid
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from scaffoldkit.app.cache.manager import CacheManager
from scaffoldkit.app.config.loader import ScaffoldConfig, load_config
from scaffoldkit.app.materialize import (
    MaterializeResult,
    Materializer,
    audit_tokens,
    ensure_project_dir_available,
    staging_path_for,
)
from scaffoldkit.app.resolver.service import FetchOptions, ResolvedTemplate, TemplateLocation, TemplateResolver
from scaffoldkit.app.sandbox.service import SandboxContext, SetupSandbox
from scaffoldkit.app.selection.layers import (
    SelectionLayer,
    config_layers,
    defaults_layer,
    document_layer,
    env_layer,
    flag_layer,
    load_selection_document,
)
from scaffoldkit.app.selection.service import SelectionResolver
from scaffoldkit.app.validation.manifest import ManifestValidator
from scaffoldkit.domain.cancellation import CancellationToken
from scaffoldkit.domain.errors import CacheError, CancelledError, ScaffoldError
from scaffoldkit.domain.manifest import SETUP_SCRIPT_FILENAME, TemplateManifest
from scaffoldkit.domain.selection import SelectionDocument
from scaffoldkit.ports.source_fetchers import ArchiveFetcher, GitClient
from scaffoldkit.settings import RuntimeSettings
from scaffoldkit.utils.telemetry import record_exception, record_structured_event

T = TypeVar("T")

STAGES = ("resolution", "validation", "selection", "preview", "materialization", "sandbox")


@dataclass(frozen=True)
class PipelineRequest:
    reference: str
    project_dir: Path
    options: Tuple[str, ...] = ()
    placeholders: Tuple[str, ...] = ()
    selection_path: Optional[Path] = None
    selection: Optional[SelectionDocument] = None
    no_cache: bool = False
    ttl_seconds: Optional[int] = None
    cancel: Optional[CancellationToken] = None
    dry_run: bool = False


@dataclass(frozen=True)
class PipelineResult:
    """Discriminated outcome: ``ok`` with a project directory, or a failure kind."""

    ok: bool
    project_dir: Optional[Path] = None
    warnings: Tuple[str, ...] = ()
    kind: Optional[str] = None
    message: Optional[str] = None
    partial_cleanup_performed: bool = False
    selection: Optional[SelectionDocument] = None
    context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    dry_run: bool = False
    planned_files: Tuple[str, ...] = ()
    unresolved: Tuple[str, ...] = ()

    @classmethod
    def success(
        cls,
        project_dir: Path,
        warnings: List[str],
        selection: Optional[SelectionDocument] = None,
    ) -> "PipelineResult":
        return cls(ok=True, project_dir=project_dir, warnings=tuple(warnings), selection=selection)

    @classmethod
    def preview(
        cls,
        project_dir: Path,
        plan: MaterializeResult,
        warnings: List[str],
        selection: Optional[SelectionDocument] = None,
    ) -> "PipelineResult":
        """Successful dry run: the files that would be written, nothing on disk."""
        return cls(
            ok=True,
            project_dir=project_dir,
            warnings=tuple(warnings),
            selection=selection,
            dry_run=True,
            planned_files=plan.files,
            unresolved=plan.unresolved,
        )

    @classmethod
    def failure(cls, error: ScaffoldError, *, partial_cleanup_performed: bool) -> "PipelineResult":
        return cls(
            ok=False,
            kind=error.kind,
            message=error.message,
            partial_cleanup_performed=partial_cleanup_performed,
            context=MappingProxyType(dict(error.context)),
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.ok and self.dry_run:
            return {
                "ok": True,
                "dryRun": True,
                "projectDir": str(self.project_dir),
                "plannedFiles": list(self.planned_files),
                "unresolvedTokens": list(self.unresolved),
                "warnings": list(self.warnings),
            }
        if self.ok:
            return {"ok": True, "projectDir": str(self.project_dir), "warnings": list(self.warnings)}
        return {
            "ok": False,
            "kind": self.kind,
            "message": self.message,
            "partialCleanupPerformed": self.partial_cleanup_performed,
        }


class _Cleanup:
    """Tracks orchestrator-owned directories discarded on exit."""

    def __init__(self) -> None:
        self.performed = False

    def discard(self, path: Path) -> None:
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
            self.performed = True


class ScaffoldPipeline:
    """Run one scaffolding invocation with strictly sequential stages.

    Errors from resolution, validation and selection abort before any project
    file is written; a failing setup script only contributes a warning.
    Every error is converted into a ``PipelineResult`` exactly once, here.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        config: ScaffoldConfig | None = None,
        cache: CacheManager | None = None,
        validator: ManifestValidator | None = None,
        git_client: GitClient | None = None,
        archive_fetcher: ArchiveFetcher | None = None,
        materializer: Materializer | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> None:
        self._settings = settings
        self._config = config
        self._cache = cache
        self._validator = validator or ManifestValidator()
        self._git_client = git_client
        self._archive_fetcher = archive_fetcher
        self._materializer = materializer or Materializer()
        self._env = os.environ if env is None else env
        self._cwd = cwd or Path.cwd()
        self._selection = SelectionResolver(settings)

    def load_config(self) -> ScaffoldConfig:
        if self._config is None:
            self._config = load_config(self._cwd, self._settings, self._env)
        return self._config

    def cache_manager(self, config: ScaffoldConfig | None = None) -> CacheManager:
        if self._cache is None:
            config = config or self.load_config()
            self._cache = CacheManager(
                self._settings,
                git_client=self._git_client,
                archive_fetcher=self._archive_fetcher,
                ttl_seconds=config.cache_ttl_seconds,
            )
        return self._cache

    def resolver(self, config: ScaffoldConfig | None = None) -> TemplateResolver:
        config = config or self.load_config()
        return TemplateResolver(
            self.cache_manager(config),
            self._validator,
            registries=config.registries,
            base_dir=self._cwd,
        )

    def run(self, request: PipelineRequest) -> PipelineResult:
        correlation_id = uuid.uuid4().hex
        cancel = request.cancel or CancellationToken()
        cleanup = _Cleanup()
        warnings: List[str] = []
        current = {"stage": STAGES[0]}

        def stage(name: str, action: Callable[[], T]) -> T:
            cancel.raise_if_cancelled(name)
            current["stage"] = name
            started = time.perf_counter()
            value = action()
            record_structured_event(
                self._settings,
                "pipeline.stage",
                payload={"stage": name},
                status="ok",
                component="pipeline",
                correlation_id=correlation_id,
                duration_ms=round((time.perf_counter() - started) * 1000, 3),
            )
            return value

        try:
            project_dir = Path(os.path.abspath(request.project_dir.expanduser()))
            with ExitStack() as stack:
                config = self.load_config()
                ensure_project_dir_available(project_dir)
                location = stage("resolution", lambda: self._locate(config, request, cancel))
                resolved = stage("validation", lambda: self._validate(location))
                warnings.extend(resolved.warnings)
                manifest = resolved.manifest
                selection = stage("selection", lambda: self._select(manifest, config, request, project_dir))
                warnings.extend(selection[1])
                document = selection[0]

                if request.dry_run:
                    materialized = stage(
                        "preview",
                        lambda: self._materializer.plan(resolved.root, manifest, document.placeholders, project_dir),
                    )
                else:
                    staging = staging_path_for(project_dir, uuid.uuid4().hex[:8])
                    stack.callback(cleanup.discard, staging)
                    materialized = stage(
                        "materialization",
                        lambda: self._materializer.materialize(
                            resolved.root, manifest, document.placeholders, project_dir, staging
                        ),
                    )
                warnings.extend(
                    f"placeholder {manifest.format_token(token)} has no value and was left in place"
                    for token in materialized.unresolved
                )
        except ScaffoldError as exc:
            return self._fail(exc, current["stage"], cleanup, correlation_id)

        if request.dry_run:
            if (resolved.root / SETUP_SCRIPT_FILENAME).is_file():
                warnings.append("setup script not run: dry run")
            result = PipelineResult.preview(project_dir, materialized, warnings, document)
        else:
            self._run_setup(resolved, document, project_dir, cancel, warnings, correlation_id)
            result = PipelineResult.success(project_dir, warnings, document)
        record_structured_event(
            self._settings,
            "pipeline.result",
            payload=result.to_dict(),
            status="ok",
            component="pipeline",
            correlation_id=correlation_id,
        )
        return result

    def _run_setup(
        self,
        resolved: ResolvedTemplate,
        document: SelectionDocument,
        project_dir: Path,
        cancel: CancellationToken,
        warnings: List[str],
        correlation_id: str,
    ) -> None:
        if cancel.cancelled:
            warnings.append("setup script skipped: invocation was cancelled after files were written")
            return
        sandbox = SetupSandbox(
            self._settings,
            template_root=resolved.root,
            manifest=resolved.manifest,
            context=SandboxContext(
                project_dir=str(project_dir),
                project_name=project_dir.name,
                resolved_selections=document,
            ),
            correlation_id=correlation_id,
        )
        outcome = sandbox.run()
        warnings.extend(outcome.warnings)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _locate(self, config: ScaffoldConfig, request: PipelineRequest, cancel: CancellationToken) -> TemplateLocation:
        options = FetchOptions(no_cache=request.no_cache, ttl_seconds=request.ttl_seconds, cancel=cancel)
        return self.resolver(config).locate(request.reference, options)

    def _validate(self, location: TemplateLocation) -> ResolvedTemplate:
        """Validate the manifest, then declare canonical tokens the files use."""
        report = self._validator.load(location.root)
        audit = audit_tokens(location.root, report.manifest)
        return ResolvedTemplate(
            location=location,
            manifest=report.manifest.with_placeholders(audit.canonical_additions),
            checksum=report.checksum,
            warnings=report.warnings,
        )

    def _select(
        self,
        manifest: TemplateManifest,
        config: ScaffoldConfig,
        request: PipelineRequest,
        project_dir: Path,
    ) -> Tuple[SelectionDocument, Tuple[str, ...]]:
        layers = self.layers(manifest, config, request)
        result = self._selection.resolve(manifest, layers, project_name=project_dir.name)
        return result.document, result.warnings

    def layers(self, manifest: TemplateManifest, config: ScaffoldConfig, request: PipelineRequest) -> List[SelectionLayer]:
        """Selection layers, lowest precedence first."""
        layers = [defaults_layer(manifest)]
        layers.extend(config_layers(config, manifest.id))
        layers.append(env_layer(manifest, self._env))
        if request.selection_path is not None:
            document = load_selection_document(request.selection_path)
            layers.append(document_layer(manifest, document, source=str(request.selection_path)))
        if request.selection is not None:
            layers.append(document_layer(manifest, request.selection))
        layers.append(flag_layer(request.options, request.placeholders))
        return layers

    def _fail(self, error: ScaffoldError, stage_name: str, cleanup: _Cleanup, correlation_id: str) -> PipelineResult:
        cache_discarded = stage_name == "resolution" and isinstance(error, (CacheError, CancelledError))
        result = PipelineResult.failure(error, partial_cleanup_performed=cleanup.performed or cache_discarded)
        record_exception(
            self._settings,
            "pipeline.result",
            error,
            component="pipeline",
            correlation_id=correlation_id,
            payload={"stage": stage_name, "kind": error.kind, "context": error.context},
        )
        return result


__all__ = ["PipelineRequest", "PipelineResult", "STAGES", "ScaffoldPipeline"]
