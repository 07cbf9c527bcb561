"""Port definitions for fetching remote template sources."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from scaffoldkit.domain.cancellation import CancellationToken


class GitClient(ABC):
    @abstractmethod
    def clone(self, url: str, ref: Optional[str], destination: Path, cancel: CancellationToken) -> None:
        """Shallow-clone ``url`` at ``ref`` (default branch when None) into ``destination``."""

    @abstractmethod
    def verify_checkout(self, destination: Path, ref: Optional[str]) -> bool:
        """Return True when ``destination`` holds a checkout of ``ref``."""


class ArchiveFetcher(ABC):
    @abstractmethod
    def fetch(self, url: str, destination: Path, cancel: CancellationToken) -> None:
        """Download the archive at ``url`` and extract it into ``destination``."""
