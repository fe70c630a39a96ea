"""ClockDriver: background thread that advances the engine's clock.

The driver builds its own ``LifecycleEngine`` inside the thread (SQLite
connections are per-thread) and calls ``tick()`` every *interval_seconds*
until ``stop()`` is called. A tick that raises is logged and the loop goes on.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from caplife.errors import LifecycleError

if TYPE_CHECKING:
    from caplife.engine import LifecycleEngine

logger = logging.getLogger(__name__)


class ClockDriver:
    def __init__(self, engine_factory: Callable[[], LifecycleEngine], *, interval_seconds: float = 60.0) -> None:
        if interval_seconds <= 0:
            msg = f"interval_seconds must be positive, got {interval_seconds}"
            raise ValueError(msg)
        self._factory = engine_factory
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="caplife-clock", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Ask the loop to stop and wait for the in-flight tick to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        engine = self._factory()
        try:
            while not self._stop.is_set():
                try:
                    result = engine.tick()
                except (LifecycleError, sqlite3.Error, OSError) as exc:
                    logger.error("Clock tick failed: %s", exc, extra={"operation": "tick", "error": str(exc)})
                else:
                    self.ticks += 1
                    logger.debug(
                        "Tick %d: %d health check(s), %d notice(s), %d retirement(s)",
                        self.ticks,
                        len(result.health),
                        len(result.deprecation.sent),
                        len(result.deprecation.retired),
                    )
                self._stop.wait(self.interval_seconds)
        finally:
            engine.close()
