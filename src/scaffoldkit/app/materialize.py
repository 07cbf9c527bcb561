"""Copy template files into a project directory with placeholder substitution."""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Pattern, Set, Tuple

from scaffoldkit.app.cache.manager import METADATA_FILENAME
from scaffoldkit.domain.canonical import CANONICAL_TOKENS, canonical_by_token
from scaffoldkit.domain.errors import MaterializationError, ValidationError
from scaffoldkit.domain.manifest import (
    AUTHOR_ASSETS_DIRNAME,
    MANIFEST_FILENAME,
    SETUP_SCRIPT_FILENAME,
    PlaceholderDef,
    TemplateManifest,
)

ROOT_ONLY_IGNORES = frozenset({MANIFEST_FILENAME, SETUP_SCRIPT_FILENAME, AUTHOR_ASSETS_DIRNAME, METADATA_FILENAME})
ANYWHERE_IGNORES = frozenset({".git", "__pycache__", ".DS_Store"})

_TOKEN_BODY = r"([A-Z][A-Z0-9_]*)"
_PATTERNS: Dict[str, Pattern[str]] = {
    "unicode": re.compile("⦃" + _TOKEN_BODY + "⦄"),
    "mustache": re.compile(r"\{\{\s*" + _TOKEN_BODY + r"\s*\}\}"),
}


@dataclass(frozen=True)
class TokenAudit:
    used: Mapping[str, Tuple[str, ...]]
    canonical_additions: Mapping[str, PlaceholderDef]


@dataclass(frozen=True)
class MaterializeResult:
    project_dir: Path
    files: Tuple[str, ...]
    unresolved: Tuple[str, ...] = ()


def token_pattern(manifest: TemplateManifest) -> Pattern[str]:
    return _PATTERNS[manifest.placeholder_format]


def iter_template_files(root: Path) -> Iterator[Path]:
    """Yield template files relative to ``root`` in a stable order; symlinks are skipped."""
    for current, dirnames, filenames in os.walk(root):
        current_path = Path(current)
        at_root = current_path == root
        dirnames[:] = sorted(
            name
            for name in dirnames
            if name not in ANYWHERE_IGNORES and not (at_root and name in ROOT_ONLY_IGNORES)
        )
        for name in sorted(filenames):
            if name in ANYWHERE_IGNORES or (at_root and name in ROOT_ONLY_IGNORES):
                continue
            if (current_path / name).is_symlink():
                continue
            yield (current_path / name).relative_to(root)


def read_text(path: Path) -> str | None:
    """Return file text, or None for binary content."""
    data = path.read_bytes()
    if b"\x00" in data:
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


def audit_tokens(root: Path, manifest: TemplateManifest) -> TokenAudit:
    """Every token in the template must be declared or canonical."""
    pattern = token_pattern(manifest)
    used: Dict[str, List[str]] = {}
    for relative in iter_template_files(root):
        text = read_text(root / relative)
        if text is None:
            continue
        for token in pattern.findall(text):
            locations = used.setdefault(token, [])
            if relative.as_posix() not in locations:
                locations.append(relative.as_posix())
    additions: Dict[str, PlaceholderDef] = {}
    for token, locations in sorted(used.items()):
        if token in manifest.placeholders:
            continue
        if token in CANONICAL_TOKENS:
            additions[token] = canonical_by_token(token)
            continue
        raise ValidationError(
            f"{locations[0]} uses placeholder {manifest.format_token(token)} which is neither declared nor canonical",
            field=f"placeholders.{token}",
            path=locations[0],
            token=token,
        )
    return TokenAudit(
        used={token: tuple(locations) for token, locations in used.items()},
        canonical_additions=additions,
    )


def render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def substitute(text: str, manifest: TemplateManifest, values: Mapping[str, Any], missing: Set[str] | None = None) -> str:
    pattern = token_pattern(manifest)

    def replace(match: "re.Match[str]") -> str:
        token = match.group(1)
        if token in values and values[token] is not None:
            return render_value(values[token])
        if missing is not None:
            missing.add(token)
        return match.group(0)

    return pattern.sub(replace, text)


def ensure_project_dir_available(project_dir: Path) -> None:
    if project_dir.is_symlink() or (project_dir.exists() and not project_dir.is_dir()):
        raise ValidationError(f"Project path {project_dir} exists and is not a directory", field="projectDir", path=str(project_dir))
    if project_dir.is_dir() and any(project_dir.iterdir()):
        raise ValidationError(f"Project directory {project_dir} is not empty", field="projectDir", path=str(project_dir))


def staging_path_for(project_dir: Path, token: str) -> Path:
    return project_dir.parent / f".{project_dir.name}.staging-{token}"


class Materializer:
    """Write template files into a staging directory, then rename into place."""

    def stage(self, root: Path, manifest: TemplateManifest, values: Mapping[str, Any], staging: Path) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        staging.mkdir(parents=True, exist_ok=False)
        written: List[str] = []
        missing: Set[str] = set()
        try:
            for relative in iter_template_files(root):
                source = root / relative
                target = staging / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                text = read_text(source)
                if text is None:
                    shutil.copyfile(source, target)
                else:
                    target.write_text(substitute(text, manifest, values, missing), encoding="utf-8")
                shutil.copymode(source, target)
                written.append(relative.as_posix())
        except OSError as exc:
            raise MaterializationError(f"Failed to copy template files: {exc}", path=str(staging)) from exc
        return tuple(written), tuple(sorted(missing))

    def commit(self, staging: Path, project_dir: Path) -> None:
        ensure_project_dir_available(project_dir)
        try:
            if project_dir.is_dir():
                project_dir.rmdir()
            project_dir.parent.mkdir(parents=True, exist_ok=True)
            os.replace(staging, project_dir)
        except OSError as exc:
            raise MaterializationError(
                f"Failed to move staged files into {project_dir}: {exc}",
                path=str(project_dir),
            ) from exc

    def plan(
        self,
        root: Path,
        manifest: TemplateManifest,
        values: Mapping[str, Any],
        project_dir: Path,
    ) -> MaterializeResult:
        """List the files a run would write and the tokens it would leave; nothing is written."""
        files: List[str] = []
        missing: Set[str] = set()
        try:
            for relative in iter_template_files(root):
                text = read_text(root / relative)
                if text is not None:
                    substitute(text, manifest, values, missing)
                files.append(relative.as_posix())
        except OSError as exc:
            raise MaterializationError(f"Failed to read template files: {exc}", path=str(root)) from exc
        return MaterializeResult(project_dir=project_dir, files=tuple(files), unresolved=tuple(sorted(missing)))

    def materialize(
        self,
        root: Path,
        manifest: TemplateManifest,
        values: Mapping[str, Any],
        project_dir: Path,
        staging: Path,
    ) -> MaterializeResult:
        files, missing = self.stage(root, manifest, values, staging)
        self.commit(staging, project_dir)
        return MaterializeResult(project_dir=project_dir, files=files, unresolved=missing)


__all__ = [
    "MaterializeResult",
    "Materializer",
    "TokenAudit",
    "audit_tokens",
    "ensure_project_dir_available",
    "iter_template_files",
    "render_value",
    "staging_path_for",
    "substitute",
    "token_pattern",
]
