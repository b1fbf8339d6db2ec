"""
Graceful shutdown for long-running processes.

SIGINT/SIGTERM only set an event; the main thread then runs the
registered stop callbacks and waits a short grace period so in-flight
work can wind down before the process exits.
"""

import logging
import signal
import threading
import time
from typing import Callable, List

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 0.5  # seconds


class ShutdownCoordinator:
    """
    Usage:
        with ShutdownCoordinator() as coordinator:
            coordinator.on_shutdown(pool.stop)
            coordinator.wait()
            coordinator.shutdown()
    """

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD,
                 signals=(signal.SIGINT, signal.SIGTERM)):
        self.grace_period = grace_period
        self.signals = tuple(signals)
        self.stop_event = threading.Event()
        self._callbacks: List[Callable[[], None]] = []
        self._previous_handlers = {}
        self._done = False
        self._lock = threading.Lock()

    def install(self) -> None:
        for sig in self.signals:
            self._previous_handlers[sig] = signal.signal(sig, self._handle_signal)

    def restore(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers = {}

    def __enter__(self) -> "ShutdownCoordinator":
        self.install()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.restore()

    def on_shutdown(self, callback: Callable[[], None]) -> None:
        """Register a stop callback; callbacks run in registration order."""
        self._callbacks.append(callback)

    def _handle_signal(self, signum, frame) -> None:
        logger.info(f"Shutting down, signal: {signal.Signals(signum).name}")
        self.request_shutdown()

    def request_shutdown(self) -> None:
        self.stop_event.set()

    def wait(self, timeout=None) -> bool:
        """Block until shutdown is requested. Returns False on timeout."""
        return self.stop_event.wait(timeout)

    def shutdown(self) -> None:
        """Run stop callbacks once, then sleep the grace period."""
        with self._lock:
            if self._done:
                return
            self._done = True

        self.stop_event.set()
        for callback in self._callbacks:
            try:
                callback()
            except Exception:
                logger.exception(f"Shutdown callback {getattr(callback, '__name__', callback)!r} failed")

        time.sleep(self.grace_period)
