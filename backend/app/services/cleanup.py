from __future__ import annotations

import logging
import threading
from typing import Optional

from .jobs import JobRegistry


logger = logging.getLogger(__name__)


class CleanupSweeper:
    """Background thread that periodically runs `JobRegistry.sweep`."""

    def __init__(self, registry: JobRegistry, interval_seconds: float):
        self._registry = registry
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None or self._interval <= 0:
            return
        self._thread = threading.Thread(target=self._loop, name="cleanup-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_once(self) -> None:
        try:
            self._registry.sweep()
        except Exception:
            logger.exception("Cleanup sweep failed")

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.run_once()
