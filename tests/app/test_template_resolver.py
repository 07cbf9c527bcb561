from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from scaffoldkit.app.cache.manager import CacheManager
from scaffoldkit.app.resolver.service import FetchOptions, TemplateResolver
from scaffoldkit.domain.errors import ResolutionError, ValidationError
from scaffoldkit.domain.reference import ReferenceKind
from scaffoldkit.settings import RuntimeSettings


def build_resolver(settings: RuntimeSettings, fake_git, **kwargs) -> TemplateResolver:
    return TemplateResolver(CacheManager(settings, git_client=fake_git), **kwargs)


def test_scenario_a_shorthand_resolves_into_cache(runtime_settings: RuntimeSettings, fake_git, template_factory) -> None:
    repo = template_factory("repo")
    nested = repo / "templates" / "basic"
    nested.mkdir(parents=True)
    for name in ("template.json", "README.md"):
        (nested / name).write_bytes((repo / name).read_bytes())
    fake_git.sources["https://github.com/owner/repo"] = repo
    resolver = build_resolver(runtime_settings, fake_git)

    resolved = resolver.resolve("owner/repo#main/templates/basic")

    key = hashlib.sha256(b"https://github.com/owner/repo@main").hexdigest()
    assert resolved.root == (runtime_settings.cache_dir / key / "templates" / "basic").resolve()
    assert resolved.manifest.id == "acme/webapp"
    assert resolved.location.cache_entry is not None
    assert fake_git.clones == [("https://github.com/owner/repo", "main")]


def test_resolving_twice_fetches_once(runtime_settings: RuntimeSettings, fake_git, template_factory) -> None:
    fake_git.sources["https://github.com/owner/repo"] = template_factory("repo")
    resolver = build_resolver(runtime_settings, fake_git)
    first = resolver.resolve("owner/repo")
    second = resolver.resolve("owner/repo")
    assert fake_git.clone_count == 1
    assert first.root == second.root


def test_local_reference_is_relative_to_base_dir(runtime_settings: RuntimeSettings, fake_git, template_factory, tmp_path: Path) -> None:
    template_factory("local")
    resolver = build_resolver(runtime_settings, fake_git, base_dir=tmp_path)
    resolved = resolver.resolve("./templates/local")
    assert resolved.root == (tmp_path / "templates" / "local").resolve()
    assert resolved.location.reference.kind is ReferenceKind.LOCAL
    assert fake_git.clone_count == 0


def test_missing_local_root_is_resolution_error(runtime_settings: RuntimeSettings, fake_git, tmp_path: Path) -> None:
    resolver = build_resolver(runtime_settings, fake_git, base_dir=tmp_path)
    with pytest.raises(ResolutionError):
        resolver.resolve("./does-not-exist")


def test_root_without_manifest_is_resolution_error(runtime_settings: RuntimeSettings, fake_git, tmp_path: Path) -> None:
    (tmp_path / "empty").mkdir()
    resolver = build_resolver(runtime_settings, fake_git, base_dir=tmp_path)
    with pytest.raises(ResolutionError, match="template.json"):
        resolver.resolve("./empty")


def test_registry_alias_expands_one_level(runtime_settings: RuntimeSettings, fake_git, template_factory) -> None:
    fake_git.sources["https://github.com/acme-org/templates"] = template_factory("registry")
    registries = {"acme": {"web": "acme-org/templates#v2", "loop": "acme/web"}}
    resolver = build_resolver(runtime_settings, fake_git, registries=registries)

    resolved = resolver.resolve("acme/web")
    assert resolved.location.reference.kind is ReferenceKind.REGISTRY_ALIAS
    assert resolved.location.source.kind is ReferenceKind.GIT_SHORTHAND
    assert fake_git.clones == [("https://github.com/acme-org/templates", "v2")]

    with pytest.raises(ResolutionError, match="one level"):
        resolver.resolve("acme/loop")
    with pytest.raises(ResolutionError, match="Unknown template"):
        resolver.resolve("acme/missing")


def test_invalid_manifest_is_validation_error(runtime_settings: RuntimeSettings, fake_git, template_factory, tmp_path: Path) -> None:
    root = template_factory("broken")
    (root / "template.json").write_text(json.dumps({"schemaVersion": "1.0.0", "id": "Bad Id", "name": "x"}), encoding="utf-8")
    resolver = build_resolver(runtime_settings, fake_git, base_dir=tmp_path)
    with pytest.raises(ValidationError) as excinfo:
        resolver.resolve("./templates/broken")
    assert excinfo.value.field == "id"


def test_no_cache_option_refetches(runtime_settings: RuntimeSettings, fake_git, template_factory) -> None:
    fake_git.sources["https://github.com/owner/repo"] = template_factory("repo")
    resolver = build_resolver(runtime_settings, fake_git)
    resolver.resolve("owner/repo")
    resolver.resolve("owner/repo", FetchOptions(no_cache=True))
    assert fake_git.clone_count == 2
