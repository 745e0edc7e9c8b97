"""
Background scheduler that runs periodic jobs.
"""

from __future__ import annotations
import logging
import threading
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Background thread that runs a job on an interval.

    The job runs once as soon as the thread starts, then every
    ``interval_seconds``. Failures are logged and the loop keeps going.
    """

    def __init__(
        self,
        job: Callable[[], Any],
        interval_seconds: int = 1800,
        name: str = "sync",
    ):
        self.job = job
        self.interval_seconds = int(interval_seconds)
        self.name = name
        self._thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the background thread."""
        if self._running:
            return

        self._running = True
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"scheduler-{self.name}",
            daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the background thread."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("%s scheduler stopped", self.name)

    def _run_loop(self) -> None:
        logger.info(
            "%s scheduler loop starting (interval=%s)",
            self.name, self.interval_seconds,
        )

        while self._running:
            try:
                self.job()
            except Exception:
                logger.exception("Scheduled %s job failed", self.name)

            # interval_seconds is re-read each step so updates apply mid-wait
            slept = 0.0
            while self._running and slept < float(self.interval_seconds or 0):
                to_sleep = min(1.0, float(self.interval_seconds) - slept)
                time.sleep(to_sleep)
                slept += to_sleep
