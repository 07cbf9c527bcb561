"""Content-addressed cache of cloned template repositories."""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from json import JSONDecodeError
from pathlib import Path
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from scaffoldkit.adapters.archive_fetcher import RequestsArchiveFetcher
from scaffoldkit.adapters.git_client import SubprocessGitClient
from scaffoldkit.domain.cancellation import CancellationToken
from scaffoldkit.domain.errors import CacheError
from scaffoldkit.domain.reference import normalize_source_url
from scaffoldkit.ports.source_fetchers import ArchiveFetcher, GitClient
from scaffoldkit.settings import RuntimeSettings
from scaffoldkit.utils.telemetry import record_structured_event

from .lock import CacheLock

METADATA_FILENAME = ".scaffoldkit-cache.json"
DEFAULT_REF = "HEAD"
ARCHIVE_REF = "archive"
STAGING_PREFIX = ".tmp-"
RETIRED_PREFIX = ".old-"
FETCH_ATTEMPTS = 2

Clock = Callable[[], datetime]
FetchFn = Callable[[Path], None]
VerifyFn = Callable[[Path], bool]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_cache_key(source_url: str, ref: Optional[str]) -> str:
    material = f"{normalize_source_url(source_url)}@{ref or DEFAULT_REF}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    cache_key: str
    local_path: Path
    fetched_at: datetime
    ttl_seconds: int
    source_url: str
    ref: str

    def is_expired(self, now: datetime, ttl_seconds: Optional[int] = None) -> bool:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        return now - self.fetched_at >= timedelta(seconds=ttl)

    def to_dict(self) -> Dict[str, object]:
        return {
            "cacheKey": self.cache_key,
            "localPath": str(self.local_path),
            "fetchedAt": self.fetched_at.isoformat(),
            "ttlSeconds": self.ttl_seconds,
            "sourceUrl": self.source_url,
            "ref": self.ref,
        }


class CacheManager:
    """Owns the cache root; every entry is created, replaced and purged here.

    Entries are built in a private staging directory and renamed into
    place only after verification, so readers never observe a partial
    clone. Writers for the same key are serialized by a lock file that
    sits next to the entry.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        git_client: GitClient | None = None,
        archive_fetcher: ArchiveFetcher | None = None,
        ttl_seconds: Optional[int] = None,
        clock: Clock = _utcnow,
    ) -> None:
        self._settings = settings
        self._root = settings.cache_dir
        self._git = git_client or SubprocessGitClient()
        self._archives = archive_fetcher or RequestsArchiveFetcher()
        self._ttl_seconds = settings.cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock

    @property
    def cache_root(self) -> Path:
        return self._root

    def entry_path(self, cache_key: str) -> Path:
        return self._root / cache_key

    def get_cached_repo(
        self,
        source_url: str,
        ref: Optional[str] = None,
        *,
        ttl_seconds: Optional[int] = None,
        no_cache: bool = False,
        cancel: CancellationToken | None = None,
    ) -> CacheEntry:
        """Return a valid entry for ``source_url@ref``, cloning when missing, stale or corrupted."""
        cancel = cancel or CancellationToken()
        ref_name = ref or DEFAULT_REF

        def fetch(staging: Path) -> None:
            self._git.clone(source_url, ref, staging, cancel)

        def verify(staging: Path) -> bool:
            return _has_content(staging) and self._git.verify_checkout(staging, ref)

        return self._get_or_fetch(
            source_url,
            ref_name,
            fetch,
            verify,
            ttl_seconds=ttl_seconds,
            no_cache=no_cache,
            cancel=cancel,
        )

    def get_cached_archive(
        self,
        url: str,
        *,
        ttl_seconds: Optional[int] = None,
        no_cache: bool = False,
        cancel: CancellationToken | None = None,
    ) -> CacheEntry:
        cancel = cancel or CancellationToken()

        def fetch(staging: Path) -> None:
            self._archives.fetch(url, staging, cancel)

        return self._get_or_fetch(
            url,
            ARCHIVE_REF,
            fetch,
            _has_content,
            ttl_seconds=ttl_seconds,
            no_cache=no_cache,
            cancel=cancel,
        )

    def lookup(self, cache_key: str, *, repair: bool = True) -> Optional[CacheEntry]:
        """Return the stored entry; a corrupted entry is purged when ``repair`` is set."""
        entry_dir = self.entry_path(cache_key)
        if not entry_dir.exists() and not entry_dir.is_symlink():
            return None
        entry = self._read_entry(cache_key)
        if entry is None and repair:
            self._record("cache.corrupted", {"cacheKey": cache_key}, level="warn", status="purged")
            self.purge(cache_key)
        return entry

    def list_entries(self) -> List[CacheEntry]:
        if not self._root.exists():
            return []
        entries: List[CacheEntry] = []
        for child in sorted(self._root.iterdir()):
            if child.name.startswith(".") or child.name.endswith(".lock"):
                continue
            entry = self._read_entry(child.name)
            if entry is not None:
                entries.append(entry)
        return entries

    def purge(self, cache_key: str) -> bool:
        entry_dir = self.entry_path(cache_key)
        if entry_dir.is_symlink() or entry_dir.is_file():
            entry_dir.unlink()
            return True
        if entry_dir.exists():
            shutil.rmtree(entry_dir)
            return True
        return False

    def clear_expired(self) -> int:
        """Remove expired and corrupted entries plus abandoned staging directories."""
        if not self._root.exists():
            return 0
        now = self._clock()
        removed = 0
        for child in sorted(self._root.iterdir()):
            if child.name.endswith(".lock"):
                continue
            if child.name.startswith((STAGING_PREFIX, RETIRED_PREFIX)):
                owner_key = child.name.split("-", 2)[1]
                if (self._root / f"{owner_key}.lock").exists():
                    continue
                if time.time() - child.stat().st_mtime > self._settings.lock_timeout_seconds:
                    shutil.rmtree(child, ignore_errors=True)
                continue
            entry = self._read_entry(child.name)
            if entry is None or entry.is_expired(now):
                self.purge(child.name)
                removed += 1
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_or_fetch(
        self,
        source_url: str,
        ref_name: str,
        fetch: FetchFn,
        verify: VerifyFn,
        *,
        ttl_seconds: Optional[int],
        no_cache: bool,
        cancel: CancellationToken,
    ) -> CacheEntry:
        cache_key = compute_cache_key(source_url, ref_name)
        if not no_cache:
            fresh = self._fresh_entry(cache_key, ttl_seconds, repair=False)
            if fresh is not None:
                self._record("cache.hit", {"cacheKey": cache_key, "sourceUrl": source_url, "ref": ref_name})
                return fresh
        cancel.raise_if_cancelled("cache lookup")
        lock = CacheLock(
            self._root / f"{cache_key}.lock",
            stale_after=self._settings.lock_timeout_seconds,
            cancel=cancel,
        )
        with lock:
            if not no_cache:
                fresh = self._fresh_entry(cache_key, ttl_seconds)
                if fresh is not None:
                    self._record(
                        "cache.hit",
                        {"cacheKey": cache_key, "sourceUrl": source_url, "ref": ref_name, "afterWait": True},
                    )
                    return fresh
            self._record("cache.miss", {"cacheKey": cache_key, "sourceUrl": source_url, "ref": ref_name, "noCache": no_cache})
            return self._populate(cache_key, source_url, ref_name, fetch, verify, ttl_seconds, cancel)

    def _fresh_entry(self, cache_key: str, ttl_seconds: Optional[int], *, repair: bool = True) -> Optional[CacheEntry]:
        entry = self.lookup(cache_key, repair=repair)
        if entry is None or entry.is_expired(self._clock(), ttl_seconds):
            return None
        return entry

    def _populate(
        self,
        cache_key: str,
        source_url: str,
        ref_name: str,
        fetch: FetchFn,
        verify: VerifyFn,
        ttl_seconds: Optional[int],
        cancel: CancellationToken,
    ) -> CacheEntry:
        self._root.mkdir(parents=True, exist_ok=True)
        ttl = self._ttl_seconds if ttl_seconds is None else ttl_seconds
        for attempt in range(1, FETCH_ATTEMPTS + 1):
            cancel.raise_if_cancelled("clone")
            staging = self._root / f"{STAGING_PREFIX}{cache_key}-{uuid4().hex}"
            started = time.monotonic()
            try:
                fetch(staging)
                cancel.raise_if_cancelled("clone")
                if not verify(staging):
                    self._record(
                        "cache.corrupted",
                        {"cacheKey": cache_key, "sourceUrl": source_url, "ref": ref_name, "attempt": attempt},
                        level="warn",
                        status="verification-failed",
                    )
                    continue
                entry = CacheEntry(
                    cache_key=cache_key,
                    local_path=self.entry_path(cache_key),
                    fetched_at=self._clock(),
                    ttl_seconds=ttl,
                    source_url=source_url,
                    ref=ref_name,
                )
                _write_metadata(staging, entry)
                self._swap_into_place(staging, entry.local_path)
                self._record(
                    "cache.clone",
                    {"cacheKey": cache_key, "sourceUrl": source_url, "ref": ref_name, "attempt": attempt},
                    status="ok",
                    duration_ms=(time.monotonic() - started) * 1000,
                )
                return entry
            finally:
                if staging.exists():
                    shutil.rmtree(staging, ignore_errors=True)
        raise CacheError(
            f"Fetched content for {source_url}@{ref_name} failed verification after {FETCH_ATTEMPTS} attempts",
            cache_key=cache_key,
            source_url=source_url,
            ref=ref_name,
        )

    def _swap_into_place(self, staging: Path, target: Path) -> None:
        retired: Optional[Path] = None
        if target.exists() or target.is_symlink():
            retired = self._root / f"{RETIRED_PREFIX}{target.name}-{uuid4().hex}"
            os.replace(target, retired)
        os.replace(staging, target)
        if retired is not None:
            if retired.is_dir() and not retired.is_symlink():
                shutil.rmtree(retired, ignore_errors=True)
            else:
                retired.unlink(missing_ok=True)

    def _read_entry(self, cache_key: str) -> Optional[CacheEntry]:
        entry_dir = self.entry_path(cache_key)
        if entry_dir.is_symlink() or not entry_dir.is_dir():
            return None
        metadata_path = entry_dir / METADATA_FILENAME
        try:
            payload = json.loads(metadata_path.read_text(encoding="utf-8"))
            entry = CacheEntry(
                cache_key=payload["cacheKey"],
                local_path=entry_dir,
                fetched_at=datetime.fromisoformat(payload["fetchedAt"]),
                ttl_seconds=int(payload["ttlSeconds"]),
                source_url=payload["sourceUrl"],
                ref=payload["ref"],
            )
        except (OSError, JSONDecodeError, KeyError, TypeError, ValueError):
            return None
        if entry.cache_key != cache_key or entry.fetched_at.tzinfo is None:
            return None
        if not _has_content(entry_dir):
            return None
        return entry

    def _record(self, event: str, payload: Dict[str, object], **extra) -> None:
        record_structured_event(self._settings, event, payload=payload, component="cache", **extra)


def _has_content(directory: Path) -> bool:
    if not directory.is_dir():
        return False
    return any(child.name not in (".git", METADATA_FILENAME) for child in directory.iterdir())


def _write_metadata(directory: Path, entry: CacheEntry) -> None:
    payload = {
        "cacheKey": entry.cache_key,
        "sourceUrl": entry.source_url,
        "ref": entry.ref,
        "fetchedAt": entry.fetched_at.isoformat(),
        "ttlSeconds": entry.ttl_seconds,
    }
    (directory / METADATA_FILENAME).write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


__all__ = [
    "ARCHIVE_REF",
    "CacheEntry",
    "CacheManager",
    "DEFAULT_REF",
    "METADATA_FILENAME",
    "compute_cache_key",
]
