from __future__ import annotations

import hashlib

import pytest

from scaffoldkit.app.cache.manager import compute_cache_key
from scaffoldkit.domain.errors import ResolutionError
from scaffoldkit.domain.reference import ReferenceKind, normalize_source_url, parse_reference

REGISTRIES = {"acme": {"web": "acme-org/templates#v2/web"}}


@pytest.mark.parametrize("raw", ["./templates/basic", "../shared", "/opt/templates/basic", "~/templates", "."])
def test_local_paths(raw: str) -> None:
    reference = parse_reference(raw)
    assert reference.kind is ReferenceKind.LOCAL
    assert reference.location == raw


def test_shorthand_with_ref_and_subpath() -> None:
    reference = parse_reference("owner/repo#main/templates/basic")
    assert reference.kind is ReferenceKind.GIT_SHORTHAND
    assert reference.location == "https://github.com/owner/repo"
    assert reference.ref == "main"
    assert reference.subpath == "templates/basic"


def test_scenario_a_cache_key() -> None:
    reference = parse_reference("owner/repo#main/templates/basic")
    expected = hashlib.sha256(b"https://github.com/owner/repo@main").hexdigest()
    assert compute_cache_key(reference.location, reference.ref) == expected


@pytest.mark.parametrize(
    "raw, ref, subpath",
    [
        ("owner/repo", None, None),
        ("owner/repo#v1.2.0", "v1.2.0", None),
        ("owner/repo/templates/api", None, "templates/api"),
        ("owner/repo.git", None, None),
    ],
)
def test_shorthand_variants(raw: str, ref: str | None, subpath: str | None) -> None:
    reference = parse_reference(raw)
    assert reference.kind is ReferenceKind.GIT_SHORTHAND
    assert reference.repo == "repo"
    assert reference.ref == ref
    assert reference.subpath == subpath


def test_full_url_with_tree() -> None:
    reference = parse_reference("https://GitHub.com/Owner/repo.git/tree/develop/templates/basic")
    assert reference.kind is ReferenceKind.URL
    assert reference.host == "github.com"
    assert reference.location == "https://github.com/Owner/repo"
    assert reference.ref == "develop"
    assert reference.subpath == "templates/basic"


def test_tarball_url() -> None:
    reference = parse_reference("https://example.com/releases/template-1.0.tar.gz")
    assert reference.kind is ReferenceKind.TARBALL
    assert reference.location == "https://example.com/releases/template-1.0.tar.gz"


def test_registry_table_is_checked_before_shorthand() -> None:
    assert parse_reference("acme/web", REGISTRIES).kind is ReferenceKind.REGISTRY_ALIAS
    assert parse_reference("other/web", REGISTRIES).kind is ReferenceKind.GIT_SHORTHAND


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "owner/repo; rm -rf /",
        "owner/repo$(id)",
        "owner/repo#",
        "owner/repo/../escape",
        "ftp://example.com/owner/repo",
        "https://example.com/only-owner",
        "https://example.com/owner/repo/blob/main",
        "justaname",
    ],
)
def test_rejected_references(raw: str) -> None:
    with pytest.raises(ResolutionError):
        parse_reference(raw)


def test_normalize_source_url() -> None:
    assert normalize_source_url("HTTPS://GitHub.com/owner/repo.git/") == "https://github.com/owner/repo"
