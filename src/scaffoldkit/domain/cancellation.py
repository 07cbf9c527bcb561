"""Cooperative cancellation token checked at stage boundaries."""

from __future__ import annotations

import threading

from .errors import CancelledError


class CancellationToken:
    """Thread-safe flag polled by long-running operations."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = "cancelled"

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str | None = None) -> None:
        if self._event.is_set():
            where = f" during {stage}" if stage else ""
            raise CancelledError(f"Operation {self._reason}{where}", stage=stage)



__all__ = ["CancellationToken"]
