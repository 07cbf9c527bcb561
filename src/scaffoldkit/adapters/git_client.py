"""Git client backed by the system ``git`` executable."""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from typing import Optional, Sequence

from scaffoldkit.domain.cancellation import CancellationToken
from scaffoldkit.domain.errors import CacheError
from scaffoldkit.ports.source_fetchers import GitClient

POLL_INTERVAL_SECONDS = 0.1


class SubprocessGitClient(GitClient):
    def __init__(self, executable: str = "git", *, timeout: float = 300.0) -> None:
        self._executable = executable
        self._timeout = timeout

    def clone(self, url: str, ref: Optional[str], destination: Path, cancel: CancellationToken) -> None:
        command = [self._executable, "clone", "--depth", "1", "--quiet"]
        if ref:
            command.extend(["--branch", ref])
        command.extend([url, str(destination)])
        self._run_cancellable(command, cancel, url=url)

    def verify_checkout(self, destination: Path, ref: Optional[str]) -> bool:
        head = self._capture(["rev-parse", "HEAD"], destination)
        if head is None:
            return False
        if not ref:
            return True
        if self._capture(["rev-parse", "--abbrev-ref", "HEAD"], destination) == ref:
            return True
        if self._capture(["describe", "--tags", "--exact-match", "HEAD"], destination) == ref:
            return True
        return head.startswith(ref)

    def _capture(self, args: Sequence[str], cwd: Path) -> Optional[str]:
        try:
            result = subprocess.run(
                [self._executable, *args],
                cwd=cwd,
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=self._env(),
            )
        except (OSError, subprocess.CalledProcessError):
            return None
        return result.stdout.strip()

    def _run_cancellable(self, command: list[str], cancel: CancellationToken, *, url: str) -> None:
        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                env=self._env(),
            )
        except OSError as exc:
            raise CacheError(f"Unable to run git: {exc}", source_url=url) from exc
        deadline = time.monotonic() + self._timeout
        while process.poll() is None:
            if cancel.cancelled or time.monotonic() > deadline:
                process.kill()
                process.communicate()
                if cancel.cancelled:
                    cancel.raise_if_cancelled("clone")
                raise CacheError(f"git clone of {url} timed out after {self._timeout:.0f}s", source_url=url)
            time.sleep(POLL_INTERVAL_SECONDS)
        _, stderr = process.communicate()
        if process.returncode != 0:
            message = (stderr or "").strip() or f"exit status {process.returncode}"
            raise CacheError(f"git clone of {url} failed: {message}", source_url=url, stderr=message)

    @staticmethod
    def _env() -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        return env


__all__ = ["SubprocessGitClient"]
