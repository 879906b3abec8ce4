"""
Stale job watchdog.

A job whose heartbeat stops while it is processing (crashed worker, killed
process) would otherwise sit in processing forever. The watchdog demotes
such jobs to stale, or to failed once they are out of retries, and can
optionally put them straight back on the worker pool.
"""
import logging
import threading
import time
from typing import Callable, List, Optional

from ..config import STALE_AFTER_SECONDS, WATCHDOG_INTERVAL_SECONDS
from ..errors import JobStateError
from ..infrastructure.data import EvaluationJob

logger = logging.getLogger("watchdog")


class JobWatchdog:
    """Periodically scans for processing jobs without a recent heartbeat."""

    def __init__(self,
                 orchestrator,
                 stale_after_seconds: float = STALE_AFTER_SECONDS,
                 interval_seconds: float = WATCHDOG_INTERVAL_SECONDS,
                 auto_retry: bool = False,
                 clock: Callable[[], float] = time.time):
        self.orchestrator = orchestrator
        self.stale_after_seconds = stale_after_seconds
        self.interval_seconds = interval_seconds
        self.auto_retry = auto_retry
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def scan(self) -> List[EvaluationJob]:
        """
        Demote every stalled job once.

        Returns:
            The jobs that were marked stale or failed during this scan
        """
        cutoff = self._clock() - self.stale_after_seconds
        demoted = []
        for job in self.orchestrator.job_store.find_stale(cutoff):
            updated = self.orchestrator.mark_stalled(job.id, cutoff)
            if updated is None:
                continue
            demoted.append(updated)
            if self.auto_retry and updated.can_retry:
                try:
                    self.orchestrator.retry(updated.id, background=True)
                except JobStateError as e:
                    logger.info("Skipped automatic retry of %s: %s", updated.id, e)
        if demoted:
            logger.info("Watchdog demoted %d job(s)", len(demoted))
        return demoted

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.scan()
            except Exception as e:
                logger.error(f"Watchdog scan failed: {e}")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="job-watchdog", daemon=True)
        self._thread.start()
        logger.info("Watchdog started (stale after %.0fs, every %.0fs)", self.stale_after_seconds,
                    self.interval_seconds)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_seconds)
            self._thread = None
