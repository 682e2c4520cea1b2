"""
Progress reporting and cooperative cancellation.

Progress is free-form phase text delivered synchronously to a callback on
the thread doing the work, e.g. "Backing up photos (12/40)...". Inside a
large collection the reporter throttles updates to every N items or every
interval seconds, whichever comes first, so a caller-side display is not
flooded.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from ranchvault.backup.errors import OperationCancelledError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


class CancellationToken:
    """
    Thread-safe cancellation flag.

    The caller (a signal handler, another thread) calls cancel(); the
    running operation calls raise_if_cancelled() at batch and media-item
    boundaries.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled")


class ProgressReporter:
    """
    Throttled progress callback wrapper.

    Example:
        reporter = ProgressReporter(print, every=25, interval_seconds=2.0)
        reporter.phase("Backing up 120 animals...")
        for i, photo in enumerate(photos, 1):
            reporter.update(f"Backing up photos ({i}/{len(photos)})...")

    Attributes:
        last_message: Most recent text passed to phase() or update(), even
            if throttled. Surfaced in export and restore results.
    """

    def __init__(
        self,
        callback: ProgressCallback | None = None,
        every: int = 25,
        interval_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.callback = callback
        self.every = max(1, every)
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._since_emit = 0
        self._last_emit = clock()
        self.last_message = ""

    def phase(self, message: str) -> None:
        """Report the start of a phase. Always delivered."""
        self._emit(message)

    def update(self, message: str) -> None:
        """Report progress inside a phase, subject to throttling."""
        self.last_message = message
        self._since_emit += 1
        if (
            self._since_emit >= self.every
            or self._clock() - self._last_emit >= self.interval_seconds
        ):
            self._emit(message)

    def _emit(self, message: str) -> None:
        self.last_message = message
        self._since_emit = 0
        self._last_emit = self._clock()
        logger.debug(message)
        if self.callback is not None:
            self.callback(message)
