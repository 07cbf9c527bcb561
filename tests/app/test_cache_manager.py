from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest

from scaffoldkit.app.cache.lock import CacheLock
from scaffoldkit.app.cache.manager import METADATA_FILENAME, CacheEntry, CacheManager, compute_cache_key
from scaffoldkit.domain.cancellation import CancellationToken
from scaffoldkit.domain.errors import CacheError, CancelledError
from scaffoldkit.settings import RuntimeSettings
from scaffoldkit.utils.telemetry import iter_events

URL = "https://github.com/owner/repo"


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def leftover_dirs(cache: CacheManager) -> List[str]:
    return sorted(child.name for child in cache.cache_root.iterdir() if child.name.startswith((".tmp-", ".old-")))


def test_second_lookup_within_ttl_reuses_entry(runtime_settings: RuntimeSettings, fake_git) -> None:
    cache = CacheManager(runtime_settings, git_client=fake_git)
    first = cache.get_cached_repo(URL, "main")
    second = cache.get_cached_repo(URL, "main")
    assert fake_git.clone_count == 1
    assert first.local_path == second.local_path
    assert first.cache_key == compute_cache_key(URL, "main")
    assert (first.local_path / "README.md").exists()
    assert not (first.local_path / "partial.txt").exists()


def test_metadata_records_fetch_details(runtime_settings: RuntimeSettings, fake_git) -> None:
    cache = CacheManager(runtime_settings, git_client=fake_git, ttl_seconds=600)
    entry = cache.get_cached_repo(URL, "v1")
    metadata = json.loads((entry.local_path / METADATA_FILENAME).read_text(encoding="utf-8"))
    assert metadata["sourceUrl"] == URL
    assert metadata["ref"] == "v1"
    assert metadata["ttlSeconds"] == 600
    assert datetime.fromisoformat(metadata["fetchedAt"]).tzinfo is not None


def test_expired_entry_is_refetched(runtime_settings: RuntimeSettings, fake_git) -> None:
    clock = Clock()
    cache = CacheManager(runtime_settings, git_client=fake_git, ttl_seconds=60, clock=clock)
    cache.get_cached_repo(URL, "main")
    clock.advance(30)
    cache.get_cached_repo(URL, "main")
    assert fake_git.clone_count == 1
    clock.advance(31)
    cache.get_cached_repo(URL, "main")
    assert fake_git.clone_count == 2
    assert leftover_dirs(cache) == []


def test_no_cache_forces_fetch(runtime_settings: RuntimeSettings, fake_git) -> None:
    cache = CacheManager(runtime_settings, git_client=fake_git)
    cache.get_cached_repo(URL, "main")
    cache.get_cached_repo(URL, "main", no_cache=True)
    assert fake_git.clone_count == 2


def test_corrupted_entry_is_replaced(runtime_settings: RuntimeSettings, fake_git) -> None:
    cache = CacheManager(runtime_settings, git_client=fake_git)
    entry = cache.get_cached_repo(URL, "main")
    (entry.local_path / METADATA_FILENAME).write_text("{not json", encoding="utf-8")
    assert cache.lookup(entry.cache_key) is None
    assert not entry.local_path.exists()
    refreshed = cache.get_cached_repo(URL, "main")
    assert fake_git.clone_count == 2
    assert refreshed.local_path == entry.local_path
    events = [evt["event"] for evt in iter_events(runtime_settings)]
    assert "cache.corrupted" in events


def test_verification_failure_is_retried_once(runtime_settings: RuntimeSettings, fake_git) -> None:
    fake_git.verify_results = [False]
    cache = CacheManager(runtime_settings, git_client=fake_git)
    entry = cache.get_cached_repo(URL, "main")
    assert fake_git.clone_count == 2
    assert entry.local_path.exists()


def test_repeated_verification_failure_raises(runtime_settings: RuntimeSettings, fake_git) -> None:
    fake_git.verify_results = [False, False]
    cache = CacheManager(runtime_settings, git_client=fake_git)
    with pytest.raises(CacheError) as excinfo:
        cache.get_cached_repo(URL, "main")
    assert excinfo.value.cache_key == compute_cache_key(URL, "main")
    assert not cache.entry_path(compute_cache_key(URL, "main")).exists()
    assert leftover_dirs(cache) == []


def test_clone_failure_surfaces_git_diagnostic(runtime_settings: RuntimeSettings, fake_git) -> None:
    fake_git.error = CacheError("git clone of x failed: Repository not found", source_url=URL)
    cache = CacheManager(runtime_settings, git_client=fake_git)
    with pytest.raises(CacheError, match="Repository not found"):
        cache.get_cached_repo(URL, "main")
    assert leftover_dirs(cache) == []


def test_cancel_during_clone_discards_partial_directory(runtime_settings: RuntimeSettings, fake_git) -> None:
    fake_git.delay = 5.0
    cache = CacheManager(runtime_settings, git_client=fake_git)
    token = CancellationToken()
    timer = threading.Timer(0.1, token.cancel)
    timer.start()
    try:
        with pytest.raises(CancelledError):
            cache.get_cached_repo(URL, "main", cancel=token)
    finally:
        timer.cancel()
    assert cache.lookup(compute_cache_key(URL, "main")) is None
    assert leftover_dirs(cache) == []


def test_concurrent_requests_clone_once(runtime_settings: RuntimeSettings, fake_git) -> None:
    fake_git.delay = 0.3
    cache = CacheManager(runtime_settings, git_client=fake_git)
    results: List[CacheEntry] = []
    errors: List[BaseException] = []

    def worker() -> None:
        try:
            results.append(cache.get_cached_repo(URL, "main"))
        except BaseException as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    assert errors == []
    assert fake_git.clone_count == 1
    assert len(results) == 2
    assert results[0].local_path == results[1].local_path
    assert (results[0].local_path / "README.md").exists()
    assert (results[0].local_path / METADATA_FILENAME).exists()


def test_list_purge_and_clear_expired(runtime_settings: RuntimeSettings, fake_git) -> None:
    clock = Clock()
    cache = CacheManager(runtime_settings, git_client=fake_git, ttl_seconds=60, clock=clock)
    first = cache.get_cached_repo(URL, "main")
    second = cache.get_cached_repo(URL, "dev")
    assert {entry.cache_key for entry in cache.list_entries()} == {first.cache_key, second.cache_key}
    assert cache.purge(second.cache_key)
    assert not cache.purge(second.cache_key)
    clock.advance(120)
    assert cache.clear_expired() == 1
    assert cache.list_entries() == []


def test_lock_times_out_while_held(tmp_path: Path) -> None:
    path = tmp_path / "entry.lock"
    with CacheLock(path, stale_after=60.0):
        contender = CacheLock(path, stale_after=60.0, timeout=0.2)
        with pytest.raises(CacheError):
            contender.acquire()
        assert contender.waited
    assert not path.exists()


def test_stale_lock_is_broken(tmp_path: Path) -> None:
    path = tmp_path / "entry.lock"
    path.write_text("12345:abandoned", encoding="utf-8")
    old = time.time() - 600
    os.utime(path, (old, old))
    with CacheLock(path, stale_after=60.0, timeout=1.0) as lock:
        assert lock.waited
        assert path.read_text(encoding="utf-8") == lock.token
        assert lock.token.startswith(f"{os.getpid()}:")


def test_held_lock_is_refreshed_and_not_broken(tmp_path: Path) -> None:
    path = tmp_path / "entry.lock"
    with CacheLock(path, stale_after=0.2) as holder:
        contender = CacheLock(path, stale_after=0.2, timeout=0.8)
        with pytest.raises(CacheError):
            contender.acquire()
        assert path.read_text(encoding="utf-8") == holder.token
        assert time.time() - path.stat().st_mtime < 0.2
    assert not path.exists()


def test_release_keeps_a_lock_owned_by_someone_else(tmp_path: Path) -> None:
    path = tmp_path / "entry.lock"
    lock = CacheLock(path, stale_after=60.0)
    lock.acquire()
    path.write_text("999:other", encoding="utf-8")
    lock.release()
    assert path.read_text(encoding="utf-8") == "999:other"


def test_slow_clone_longer_than_lock_timeout_clones_once(runtime_settings: RuntimeSettings, fake_git) -> None:
    settings = replace(runtime_settings, lock_timeout_seconds=0.3)
    fake_git.delay = 1.0
    cache = CacheManager(settings, git_client=fake_git)
    results: List[CacheEntry] = []
    errors: List[BaseException] = []

    def worker() -> None:
        try:
            results.append(cache.get_cached_repo(URL, "main"))
        except BaseException as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    assert errors == []
    assert fake_git.clone_count == 1
    assert [entry.local_path for entry in results] == [results[0].local_path] * 2
    assert not (settings.cache_dir / f"{results[0].cache_key}.lock").exists()


def test_clear_expired_keeps_staging_of_a_locked_entry(runtime_settings: RuntimeSettings, fake_git) -> None:
    cache = CacheManager(replace(runtime_settings, lock_timeout_seconds=0.0), git_client=fake_git)
    key = compute_cache_key(URL, "main")
    cache.cache_root.mkdir(parents=True, exist_ok=True)
    live = cache.cache_root / f".tmp-{key}-aaaa"
    orphan = cache.cache_root / f".tmp-{'0' * 64}-bbbb"
    old = time.time() - 10
    for directory in (live, orphan):
        directory.mkdir()
        os.utime(directory, (old, old))
    (cache.cache_root / f"{key}.lock").write_text("1:fetching", encoding="utf-8")
    assert cache.clear_expired() == 0
    assert live.is_dir()
    assert not orphan.exists()
