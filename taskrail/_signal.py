"""SIGINT/SIGTERM handling for the long-running daemon."""

from __future__ import annotations

import os
import signal
import sys
import threading
from collections.abc import Callable

from taskrail._log import get_logger

logger = get_logger("signal")

_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownSignals:
    """Route termination signals to a stop event while the block is active.

    The first signal runs *on_first_signal* and sets *stop_event* so the
    daemon can wind down gracefully. A second signal exits the process at
    once; runs still registered are picked up by the next daemon start.
    Previous handlers are restored on exit. Must be entered from the main
    thread.
    """

    def __init__(
        self,
        stop_event: threading.Event,
        *,
        on_first_signal: Callable[[], None] | None = None,
    ) -> None:
        self._stop = stop_event
        self._on_first_signal = on_first_signal
        self._received = 0
        self._previous: dict[int, object] = {}

    @property
    def received(self) -> int:
        return self._received

    def _handle(self, signum: int, frame: object) -> None:
        self._received += 1
        if self._received > 1:
            print("\nForce shutdown.", file=sys.stderr, flush=True)
            os._exit(1)
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        if self._on_first_signal is not None:
            self._on_first_signal()
        self._stop.set()

    def __enter__(self) -> ShutdownSignals:
        for sig in _SIGNALS:
            self._previous[sig] = signal.getsignal(sig)
            signal.signal(sig, self._handle)
        return self

    def __exit__(self, *exc: object) -> None:
        for sig, previous in self._previous.items():
            if previous is None:
                previous = signal.SIG_DFL
            signal.signal(sig, previous)  # type: ignore[arg-type]
        self._previous.clear()
