"""Cooperative cancellation shared by every blocking step of an update run."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable

import structlog

from pwrsync.core.errors import OperationCancelled

logger = structlog.get_logger()


class CancellationToken:
    """Thread-safe cancellation signal.

    One token governs a whole orchestrator run. Downloads check it per read
    chunk, the patch tool terminates its subprocess when it fires, and phase
    boundaries call :meth:`raise_if_cancelled`.

    Args:
        poll_interval: Seconds between checks in :meth:`wait`
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self.poll_interval = poll_interval
        self._event = threading.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Safe to call more than once and from any thread."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)

        logger.info("cancellation_requested", reason=reason)
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback run once when the token is cancelled.

        Runs immediately if the token is already cancelled.

        Returns:
            Function that unregisters the callback
        """
        with self._lock:
            already = self._event.is_set()
            if not already:
                self._callbacks.append(callback)

        if already:
            callback()

        def remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return remove

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelled if cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        """Wait until the token is cancelled."""
        while not self._event.is_set():
            await asyncio.sleep(self.poll_interval)


def check_cancelled(token: CancellationToken | None) -> None:
    """Raise OperationCancelled if an optional token is cancelled."""
    if token is not None:
        token.raise_if_cancelled()
