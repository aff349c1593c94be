from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """External stop signal shared by the scheduler and the executor.

    A soft cancellation stops new dispatches and lets running nodes finish.
    A hard cancellation additionally terminates in-flight phases.
    """

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._hard = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def hard(self) -> bool:
        return self._hard.is_set()

    def cancel(self, *, hard: bool = False) -> None:
        with self._lock:
            if hard:
                self._hard.set()
            already = self._cancelled.is_set()
            self._cancelled.set()
            callbacks = list(self._callbacks)
        logger.warning("%s cancellation requested", "hard" if hard else "soft")
        if already and not hard:
            return
        for callback in callbacks:
            callback()

    def subscribe(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` on every cancellation; immediately if already cancelled."""
        with self._lock:
            self._callbacks.append(callback)
            fire = self._cancelled.is_set()
        if fire:
            callback()

    def unsubscribe(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait_hard(self, timeout: float) -> bool:
        return self._hard.wait(timeout)
