"""Advisory lock file serializing writers of one cache entry."""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import Optional
from uuid import uuid4

from scaffoldkit.domain.cancellation import CancellationToken
from scaffoldkit.domain.errors import CacheError

RETRY_DELAY_SECONDS = 0.05
HEARTBEATS_PER_STALE_WINDOW = 4


class CacheLock:
    """Exclusive lock implemented with ``O_CREAT | O_EXCL`` on a sibling file.

    The file holds an owner token (``<pid>:<nonce>``). While the lock is held
    a heartbeat thread refreshes its mtime, so only a lock whose holder
    stopped refreshing for ``stale_after`` seconds is broken. Waiters keep
    waiting while the holder is alive unless ``timeout`` bounds the wait.
    ``release()`` removes the file only while it still carries our token.
    """

    def __init__(
        self,
        path: Path,
        *,
        stale_after: float,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self._path = path
        self._stale_after = stale_after
        self._timeout = timeout
        self._cancel = cancel
        self._token = f"{os.getpid()}:{uuid4().hex}"
        self._held = False
        self._stop = threading.Event()
        self._heartbeat: Optional[threading.Thread] = None
        self.waited = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def token(self) -> str:
        return self._token

    def acquire(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        deadline = None if self._timeout is None else time.monotonic() + self._timeout
        while True:
            try:
                fd = os.open(str(self._path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                self.waited = True
                if self._break_if_stale():
                    continue
                if self._cancel is not None:
                    self._cancel.raise_if_cancelled("cache lock wait")
                if deadline is not None and time.monotonic() > deadline:
                    raise CacheError(
                        f"Timed out after {self._timeout:.0f}s waiting for cache lock {self._path}",
                        lock_file=str(self._path),
                    )
                time.sleep(RETRY_DELAY_SECONDS)
                continue
            try:
                os.write(fd, self._token.encode("ascii"))
            finally:
                os.close(fd)
            self._held = True
            self._start_heartbeat()
            return

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        self._stop.set()
        if self._heartbeat is not None:
            self._heartbeat.join()
            self._heartbeat = None
        if _read_owner(self._path) == self._token:
            self._path.unlink(missing_ok=True)

    def _start_heartbeat(self) -> None:
        self._stop.clear()
        interval = self._stale_after / HEARTBEATS_PER_STALE_WINDOW
        self._heartbeat = threading.Thread(
            target=self._beat,
            args=(interval,),
            name=f"cache-lock-{self._path.name}",
            daemon=True,
        )
        self._heartbeat.start()

    def _beat(self, interval: float) -> None:
        while not self._stop.wait(interval):
            if _read_owner(self._path) != self._token:
                return
            try:
                os.utime(self._path)
            except FileNotFoundError:
                return

    def _break_if_stale(self) -> bool:
        try:
            age = time.time() - self._path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age <= self._stale_after:
            return False
        owner = _read_owner(self._path)
        # The owner may have been replaced between the stat and this read.
        try:
            age = time.time() - self._path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age <= self._stale_after or _read_owner(self._path) != owner:
            return False
        self._path.unlink(missing_ok=True)
        return True

    def __enter__(self) -> "CacheLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _read_owner(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="ascii").strip()
    except (FileNotFoundError, UnicodeDecodeError):
        return None


__all__ = ["CacheLock"]
