"""
Periodic background work (health probes, schema refresh, session sweeps).
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Run a callable on a fixed interval in a daemon thread.

    An exception from one run is logged and the next run still happens.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], None], run_immediately: bool = True):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Started background task {self.name} (every {self.interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info(f"Stopped background task {self.name}")

    def _loop(self) -> None:
        if self.run_immediately:
            self._run_once()
        while not self._stop.wait(self.interval):
            self._run_once()

    def _run_once(self) -> None:
        try:
            self.func()
        except Exception as e:
            logger.exception(f"Background task {self.name} failed: {e}")
