# Copyright (c) Syntropy Systems
"""Cooperative cancellation shared by every stage of a build or run."""
from __future__ import annotations

import threading

from ixcheck.errors import BuildAbortedError

ABORT_MESSAGE = "Study build aborted."


class CancellationToken:
    """Externally settable abort flag.

    Stages poll it at coarse points: between phases, at each node of the
    scenario tree, and once per engine output line.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, message: str = ABORT_MESSAGE) -> None:
        """Raise BuildAbortedError if cancellation was requested."""
        if self._event.is_set():
            raise BuildAbortedError(message)

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds, returning early (True) on cancel."""
        return self._event.wait(timeout=timeout)
