"""Turn template references into validated local template roots."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional, Tuple

from scaffoldkit.app.cache.manager import CacheEntry, CacheManager
from scaffoldkit.app.validation.manifest import ManifestValidator
from scaffoldkit.domain.boundary import BoundaryValidator
from scaffoldkit.domain.cancellation import CancellationToken
from scaffoldkit.domain.errors import ResolutionError, SandboxError
from scaffoldkit.domain.manifest import MANIFEST_FILENAME, TemplateManifest
from scaffoldkit.domain.reference import ReferenceKind, TemplateReference, parse_reference


@dataclass(frozen=True)
class FetchOptions:
    no_cache: bool = False
    ttl_seconds: Optional[int] = None
    cancel: Optional[CancellationToken] = None


@dataclass(frozen=True)
class TemplateLocation:
    reference: TemplateReference
    root: Path
    source: TemplateReference
    cache_entry: Optional[CacheEntry] = None


@dataclass(frozen=True)
class ResolvedTemplate:
    location: TemplateLocation
    manifest: TemplateManifest
    checksum: str
    warnings: Tuple[str, ...] = ()

    @property
    def root(self) -> Path:
        return self.location.root


Locator = Callable[[TemplateReference, FetchOptions], Tuple[Path, Optional[CacheEntry]]]


class TemplateResolver:
    """Parse references, follow one level of registry aliasing, fetch and locate."""

    def __init__(
        self,
        cache: CacheManager,
        validator: ManifestValidator | None = None,
        *,
        registries: Mapping[str, Mapping[str, str]] | None = None,
        base_dir: Path | None = None,
    ) -> None:
        self._cache = cache
        self._validator = validator or ManifestValidator()
        self._registries = MappingProxyType(dict(registries or {}))
        self._base_dir = (base_dir or Path.cwd()).resolve()
        self._locators: Dict[ReferenceKind, Locator] = {
            ReferenceKind.LOCAL: self._locate_local,
            ReferenceKind.GIT_SHORTHAND: self._locate_git,
            ReferenceKind.URL: self._locate_git,
            ReferenceKind.TARBALL: self._locate_archive,
            ReferenceKind.REGISTRY_ALIAS: self._locate_alias,
        }

    @property
    def validator(self) -> ManifestValidator:
        return self._validator

    def parse(self, raw: str) -> TemplateReference:
        return parse_reference(raw, self._registries)

    def locate(self, raw: str, options: FetchOptions | None = None) -> TemplateLocation:
        """Resolve ``raw`` to a directory holding a manifest file."""
        options = options or FetchOptions()
        reference = self.parse(raw)
        source = self.expand_alias(reference)
        root, entry = self._locators[source.kind](source, options)
        if not root.is_dir():
            raise ResolutionError(f"Template root {root} does not exist", reference=raw, path=str(root))
        if not (root / MANIFEST_FILENAME).is_file():
            raise ResolutionError(
                f"Template root {root} has no {MANIFEST_FILENAME}",
                reference=raw,
                path=str(root),
            )
        return TemplateLocation(reference=reference, root=root, source=source, cache_entry=entry)

    def resolve(self, raw: str, options: FetchOptions | None = None) -> ResolvedTemplate:
        location = self.locate(raw, options)
        report = self._validator.load(location.root)
        return ResolvedTemplate(
            location=location,
            manifest=report.manifest,
            checksum=report.checksum,
            warnings=report.warnings,
        )

    def expand_alias(self, reference: TemplateReference) -> TemplateReference:
        if reference.kind is not ReferenceKind.REGISTRY_ALIAS:
            return reference
        registry, _, name = (reference.registry_alias or "").partition("/")
        templates = self._registries.get(registry, {})
        target = templates.get(name)
        if target is None:
            known = ", ".join(sorted(templates)) or "none"
            raise ResolutionError(
                f"Unknown template '{name}' in registry '{registry}' (known: {known})",
                reference=reference.raw,
                registry=registry,
            )
        expanded = parse_reference(target, self._registries)
        if expanded.kind is ReferenceKind.REGISTRY_ALIAS:
            raise ResolutionError(
                f"Registry alias '{reference.raw}' points to another alias '{target}'; aliases are one level deep",
                reference=reference.raw,
                registry=registry,
            )
        return expanded

    # ------------------------------------------------------------------
    # Locators
    # ------------------------------------------------------------------

    def _locate_local(self, reference: TemplateReference, options: FetchOptions) -> Tuple[Path, Optional[CacheEntry]]:
        path = Path(reference.location).expanduser()
        if not path.is_absolute():
            path = self._base_dir / path
        return path.resolve(), None

    def _locate_git(self, reference: TemplateReference, options: FetchOptions) -> Tuple[Path, Optional[CacheEntry]]:
        entry = self._cache.get_cached_repo(
            reference.location,
            reference.ref,
            ttl_seconds=options.ttl_seconds,
            no_cache=options.no_cache,
            cancel=options.cancel,
        )
        return self._within_entry(entry, reference), entry

    def _locate_archive(self, reference: TemplateReference, options: FetchOptions) -> Tuple[Path, Optional[CacheEntry]]:
        entry = self._cache.get_cached_archive(
            reference.location,
            ttl_seconds=options.ttl_seconds,
            no_cache=options.no_cache,
            cancel=options.cancel,
        )
        return self._within_entry(entry, reference), entry

    def _locate_alias(self, reference: TemplateReference, options: FetchOptions) -> Tuple[Path, Optional[CacheEntry]]:
        raise ResolutionError(f"Registry alias '{reference.raw}' was not expanded", reference=reference.raw)

    def _within_entry(self, entry: CacheEntry, reference: TemplateReference) -> Path:
        if not reference.subpath:
            return entry.local_path
        try:
            return BoundaryValidator(entry.local_path).resolve(reference.subpath, capability="resolve.subpath")
        except SandboxError as exc:
            raise ResolutionError(
                f"Subpath '{reference.subpath}' escapes the fetched template",
                reference=reference.raw,
                path=exc.path,
            ) from exc


__all__ = ["FetchOptions", "ResolvedTemplate", "TemplateLocation", "TemplateResolver"]
