from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import pytest

from scaffoldkit.app.materialize import (
    Materializer,
    audit_tokens,
    ensure_project_dir_available,
    iter_template_files,
    staging_path_for,
    substitute,
)
from scaffoldkit.app.validation.manifest import ManifestValidator
from scaffoldkit.domain.errors import ValidationError
from scaffoldkit.domain.manifest import TemplateManifest


def load_manifest(payload: Dict[str, Any]) -> TemplateManifest:
    return ManifestValidator().validate(payload).manifest


def test_author_files_are_not_copied(template_factory) -> None:
    root = template_factory(
        files={"README.md": "hi\n", "src/app.py": "print('x')\n", "__pycache__/x.pyc": "junk"},
        setup="def setup(context, toolkit):\n    pass\n",
        assets={"snippet.txt": "asset\n"},
    )
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref\n", encoding="utf-8")
    files = [path.as_posix() for path in iter_template_files(root)]
    assert files == ["README.md", "src/app.py"]


def test_undeclared_token_fails_the_audit(template_factory, manifest_payload: Dict[str, Any]) -> None:
    root = template_factory(files={"config.txt": "owner=⦃OWNER⦄\n"})
    with pytest.raises(ValidationError) as excinfo:
        audit_tokens(root, load_manifest(manifest_payload))
    assert excinfo.value.field == "placeholders.OWNER"
    assert excinfo.value.context["path"] == "config.txt"


def test_canonical_tokens_are_added_by_the_audit(template_factory, manifest_payload: Dict[str, Any]) -> None:
    root = template_factory(files={"LICENSE.md": "⦃LICENSE⦄ by ⦃AUTHOR⦄\n", "README.md": "⦃PORT⦄\n"})
    audit = audit_tokens(root, load_manifest(manifest_payload))
    assert set(audit.canonical_additions) == {"AUTHOR", "LICENSE"}
    assert audit.canonical_additions["LICENSE"].default == "MIT"
    assert audit.used["PORT"] == ("README.md",)


def test_substitute_renders_values_and_reports_missing(manifest_payload: Dict[str, Any]) -> None:
    manifest = load_manifest(manifest_payload)
    missing: set = set()
    text = substitute("⦃PROJECT_NAME⦄:⦃PORT⦄ ⦃FLAG⦄ ⦃API_TOKEN⦄", manifest, {"PROJECT_NAME": "demo", "PORT": 80, "FLAG": True}, missing)
    assert text == "demo:80 true ⦃API_TOKEN⦄"
    assert missing == {"API_TOKEN"}


def test_mustache_format(manifest_payload: Dict[str, Any]) -> None:
    manifest_payload["placeholderFormat"] = "mustache"
    manifest = load_manifest(manifest_payload)
    assert substitute("{{ PROJECT_NAME }}-{{PORT}} ⦃PORT⦄", manifest, {"PROJECT_NAME": "demo", "PORT": 1}) == "demo-1 ⦃PORT⦄"


def test_materialize_writes_through_staging(tmp_path: Path, template_factory, manifest_payload: Dict[str, Any]) -> None:
    root = template_factory(files={"README.md": "# ⦃PROJECT_NAME⦄\n", "bin/run.sh": "echo ⦃PORT⦄\n"})
    os.chmod(root / "bin" / "run.sh", 0o755)
    (root / "logo.bin").write_bytes(b"\x00\x01\xe2\xa6\x83PORT\xe2\xa6\x84")
    project_dir = tmp_path / "out" / "demo"
    staging = staging_path_for(project_dir, "abc123")

    result = Materializer().materialize(root, load_manifest(manifest_payload), {"PROJECT_NAME": "demo", "PORT": 8080}, project_dir, staging)

    assert result.files == ("README.md", "bin/run.sh", "logo.bin")
    assert result.unresolved == ()
    assert (project_dir / "README.md").read_text(encoding="utf-8") == "# demo\n"
    assert (project_dir / "bin" / "run.sh").read_text(encoding="utf-8") == "echo 8080\n"
    assert os.access(project_dir / "bin" / "run.sh", os.X_OK)
    assert (project_dir / "logo.bin").read_bytes() == b"\x00\x01\xe2\xa6\x83PORT\xe2\xa6\x84"
    assert not staging.exists()
    assert not (project_dir / "template.json").exists()


def test_unresolved_tokens_are_left_in_place(tmp_path: Path, template_factory, manifest_payload: Dict[str, Any]) -> None:
    root = template_factory()
    project_dir = tmp_path / "demo"
    result = Materializer().materialize(root, load_manifest(manifest_payload), {}, project_dir, staging_path_for(project_dir, "x"))
    assert result.unresolved == ("PROJECT_NAME",)
    assert (project_dir / "README.md").read_text(encoding="utf-8") == "# ⦃PROJECT_NAME⦄\n"


def test_project_dir_must_be_missing_or_empty(tmp_path: Path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    ensure_project_dir_available(empty)
    ensure_project_dir_available(tmp_path / "missing")

    busy = tmp_path / "busy"
    busy.mkdir()
    (busy / "keep.txt").write_text("mine\n", encoding="utf-8")
    with pytest.raises(ValidationError) as excinfo:
        ensure_project_dir_available(busy)
    assert excinfo.value.field == "projectDir"

    plain = tmp_path / "file.txt"
    plain.write_text("x", encoding="utf-8")
    with pytest.raises(ValidationError):
        ensure_project_dir_available(plain)


def test_commit_into_existing_empty_directory(tmp_path: Path, template_factory, manifest_payload: Dict[str, Any]) -> None:
    root = template_factory()
    project_dir = tmp_path / "demo"
    project_dir.mkdir()
    Materializer().materialize(root, load_manifest(manifest_payload), {"PROJECT_NAME": "demo"}, project_dir, staging_path_for(project_dir, "y"))
    assert (project_dir / "README.md").exists()
