from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class RecurringTask:
    """Runs ``target`` every ``interval_seconds`` on a daemon thread."""

    def __init__(self, name: str, target: Callable[[], Any], interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.target = target
        self.interval_seconds = interval_seconds
        self._cancel = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def start(self) -> None:
        if self.running:
            return
        self._cancel.clear()
        self._thread = threading.Thread(target=self._loop, name=f"courier-{self.name}", daemon=True)
        self._thread.start()
        logger.info("scheduler started", extra={"task": self.name, "interval_seconds": self.interval_seconds})

    def stop(self, timeout: float | None = 10.0) -> None:
        self._cancel.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("scheduler stopped", extra={"task": self.name})

    def wake(self) -> None:
        self._wake.set()

    def tick(self) -> Any:
        return self.target()

    def _loop(self) -> None:
        while not self._cancel.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduled task failed", extra={"task": self.name})
            self._wake.wait(self.interval_seconds)
            self._wake.clear()
