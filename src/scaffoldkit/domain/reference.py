"""Template reference grammar and value object."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional
from urllib.parse import urlsplit

from .errors import ResolutionError

DEFAULT_GIT_HOST = "github.com"
ARCHIVE_EXTENSIONS = (".tar.gz", ".tgz", ".tar", ".zip")
LOCAL_PREFIXES = ("/", "./", "../", "~")
SHELL_METACHARACTERS = (";", "|", "&", "`", "$(", "${")

_SEGMENT = re.compile(r"^[A-Za-z0-9_.-]+$")


class ReferenceKind(str, Enum):
    LOCAL = "local"
    GIT_SHORTHAND = "git-shorthand"
    URL = "url"
    TARBALL = "tarball"
    REGISTRY_ALIAS = "registry-alias"


@dataclass(frozen=True)
class TemplateReference:
    kind: ReferenceKind
    raw: str
    location: str = ""
    host: Optional[str] = None
    owner: Optional[str] = None
    repo: Optional[str] = None
    ref: Optional[str] = None
    subpath: Optional[str] = None
    registry_alias: Optional[str] = None

    @property
    def is_remote(self) -> bool:
        return self.kind in (ReferenceKind.GIT_SHORTHAND, ReferenceKind.URL, ReferenceKind.TARBALL)

    @property
    def source_url(self) -> Optional[str]:
        if self.kind in (ReferenceKind.GIT_SHORTHAND, ReferenceKind.URL, ReferenceKind.TARBALL):
            return self.location
        return None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"kind": self.kind.value, "raw": self.raw}
        for key in ("location", "host", "owner", "repo", "ref", "subpath", "registry_alias"):
            value = getattr(self, key)
            if value:
                payload[key] = value
        return payload


def normalize_source_url(url: str) -> str:
    """Canonical form used for cache keys: lower-case scheme and host, no ``.git`` or trailing slash."""
    parts = urlsplit(url.strip())
    scheme = (parts.scheme or "https").lower()
    host = parts.netloc.lower()
    path = parts.path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return f"{scheme}://{host}{path}"


def is_archive_path(path: str) -> bool:
    lowered = path.lower()
    return any(lowered.endswith(ext) for ext in ARCHIVE_EXTENSIONS)


def parse_reference(raw: str, registries: Mapping[str, Mapping[str, str]] | None = None) -> TemplateReference:
    """Parse ``raw`` with the ordered grammar; the first matching form wins.

    Order: local path, shorthand (after consulting the registry table for
    ``registry/template`` pairs), full URL, tarball URL. Raises
    ``ResolutionError`` when nothing matches.
    """
    _check_safe(raw)
    text = raw.strip()
    registries = registries or {}

    if text in (".", "..") or text.startswith(LOCAL_PREFIXES):
        return TemplateReference(kind=ReferenceKind.LOCAL, raw=raw, location=text)

    if "://" in text:
        return _parse_url(raw, text)

    alias = _match_registry_alias(text, registries)
    if alias is not None:
        return TemplateReference(kind=ReferenceKind.REGISTRY_ALIAS, raw=raw, registry_alias=alias)

    shorthand = _parse_shorthand(raw, text)
    if shorthand is not None:
        return shorthand

    raise ResolutionError(
        f"Unsupported template reference '{raw}' (expected ./path, owner/repo[#ref][/subpath], "
        "https URL, archive URL, or registry/template)",
        reference=raw,
    )


def _check_safe(raw: str) -> None:
    if not isinstance(raw, str) or not raw.strip():
        raise ResolutionError("Template reference must be a non-empty string", reference=raw)
    if "\x00" in raw:
        raise ResolutionError("Template reference contains a null byte", reference=raw.replace("\x00", "\\0"))
    for token in SHELL_METACHARACTERS:
        if token in raw:
            raise ResolutionError(f"Template reference contains forbidden sequence '{token}'", reference=raw)


def _match_registry_alias(text: str, registries: Mapping[str, Mapping[str, str]]) -> Optional[str]:
    if "#" in text:
        return None
    parts = text.split("/")
    if len(parts) != 2 or parts[0] not in registries:
        return None
    if not parts[1]:
        raise ResolutionError(f"Registry alias '{text}' is missing a template name", reference=text)
    return text


def _clean_subpath(raw: str, subpath: str) -> Optional[str]:
    subpath = subpath.strip("/")
    if not subpath:
        return None
    segments = subpath.split("/")
    if any(segment in ("", ".", "..") for segment in segments):
        raise ResolutionError(f"Subpath '{subpath}' in '{raw}' must not contain empty, '.' or '..' segments", reference=raw)
    return "/".join(segments)


def _parse_shorthand(raw: str, text: str) -> Optional[TemplateReference]:
    repo_part, _, ref_part = text.partition("#")
    segments = repo_part.split("/")
    if len(segments) < 2 or not all(_SEGMENT.match(segment) for segment in segments[:2]):
        return None
    owner, repo = segments[0], segments[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    subpath_parts = segments[2:]
    ref: Optional[str] = None
    if "#" in text:
        ref, _, tail = ref_part.partition("/")
        if not ref:
            raise ResolutionError(f"Empty ref after '#' in '{raw}'", reference=raw)
        if tail:
            subpath_parts = subpath_parts + [tail]
    subpath = _clean_subpath(raw, "/".join(subpath_parts))
    return TemplateReference(
        kind=ReferenceKind.GIT_SHORTHAND,
        raw=raw,
        location=f"https://{DEFAULT_GIT_HOST}/{owner}/{repo}",
        host=DEFAULT_GIT_HOST,
        owner=owner,
        repo=repo,
        ref=ref,
        subpath=subpath,
    )


def _parse_url(raw: str, text: str) -> TemplateReference:
    parts = urlsplit(text)
    if parts.scheme.lower() not in ("https", "http") or not parts.netloc:
        raise ResolutionError(f"Unsupported URL '{raw}' (only http(s) URLs are accepted)", reference=raw)
    host = parts.netloc.lower()

    if is_archive_path(parts.path):
        location = f"{parts.scheme.lower()}://{host}{parts.path}"
        if parts.query:
            location += f"?{parts.query}"
        return TemplateReference(kind=ReferenceKind.TARBALL, raw=raw, location=location, host=host)

    segments = [segment for segment in parts.path.split("/") if segment]
    if len(segments) < 2:
        raise ResolutionError(f"URL '{raw}' must name an owner and repository", reference=raw)
    owner, repo = segments[0], segments[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    ref: Optional[str] = None
    subpath: Optional[str] = None
    rest = segments[2:]
    if rest:
        if rest[0] != "tree" or len(rest) < 2:
            raise ResolutionError(
                f"URL '{raw}' must have the form https://host/owner/repo[/tree/ref/subpath]",
                reference=raw,
            )
        ref = rest[1]
        subpath = _clean_subpath(raw, "/".join(rest[2:]))
    if parts.fragment and ref is None:
        ref = parts.fragment
    return TemplateReference(
        kind=ReferenceKind.URL,
        raw=raw,
        location=normalize_source_url(f"{parts.scheme}://{host}/{owner}/{repo}"),
        host=host,
        owner=owner,
        repo=repo,
        ref=ref,
        subpath=subpath,
    )


__all__ = [
    "ARCHIVE_EXTENSIONS",
    "ReferenceKind",
    "TemplateReference",
    "is_archive_path",
    "normalize_source_url",
    "parse_reference",
]
