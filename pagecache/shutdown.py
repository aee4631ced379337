"""Graceful shutdown: wait for a stop signal, then for workers to finish."""

from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class GracefulTimeoutError(TimeoutError):
    """Raised when workers do not finish within the graceful timeout."""


class Graceful:
    """Counts running workers and shuts them down on a signal or stop event.

    SIGINT and SIGTERM set the stop event. Handlers are installed only when
    constructed in the main thread, and restored once shutdown has begun.
    """

    def __init__(
        self,
        stop_event: threading.Event,
        timeout: float = DEFAULT_TIMEOUT,
        handle_signals: bool = True,
    ) -> None:
        self.stop_event = stop_event
        self.timeout = timeout
        self._cond = threading.Condition()
        self._count = 0
        self._signal: Optional[signal.Signals] = None
        self._previous: dict[signal.Signals, Any] = {}
        if handle_signals and threading.current_thread() is threading.main_thread():
            for sig in (signal.SIGINT, signal.SIGTERM):
                self._previous[sig] = signal.signal(sig, self._on_signal)

    def _on_signal(self, signum: int, _frame: Any) -> None:
        self._signal = signal.Signals(signum)
        self.stop_event.set()

    def _restore_signals(self) -> None:
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()

    def add(self, n: int) -> None:
        """Add ``n`` (possibly negative) to the worker count."""
        with self._cond:
            if self._count + n < 0:
                raise ValueError("negative worker counter")
            self._count += n
            if self._count == 0:
                self._cond.notify_all()

    def done(self) -> None:
        """Mark one worker as finished."""
        self.add(-1)

    def set_graceful_timeout(self, timeout: float) -> None:
        """Seconds to wait for workers once shutdown has begun."""
        self.timeout = timeout

    def listen_cancel_and_await(self) -> None:
        """Block until a signal or the stop event, then wait for the workers.

        Raises GracefulTimeoutError if they do not finish in time.
        """
        try:
            while not self.stop_event.wait(0.2):
                pass
        finally:
            self._restore_signals()

        if self._signal is None:
            logger.info("[graceful-shutdown] received a stop event, starting cancellation")
        else:
            logger.info(
                "[graceful-shutdown] received a %s signal, starting cancellation",
                self._signal.name,
            )
        self._cancel_and_await_with_timeout()

    def _cancel_and_await_with_timeout(self) -> None:
        self.stop_event.set()
        with self._cond:
            finished = self._cond.wait_for(lambda: self._count == 0, timeout=self.timeout)
        if not finished:
            message = f"timeout error, not all workers were finished within {self.timeout}s"
            logger.info("[graceful-shutdown] %s", message)
            raise GracefulTimeoutError(message)
        logger.info("[graceful-shutdown] service was gracefully shut down")