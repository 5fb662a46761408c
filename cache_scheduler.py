"""
Background maintenance for the intelligent cache.
Runs the expired-entry sweep and the snapshot job on their own threads.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from lock_utils import coordinated_lock, create_component_lock, unregister_lock

logger = logging.getLogger(__name__)


class PeriodicJob:
    """
    Runs a callable every ``interval`` seconds on a daemon thread.

    A run that would overlap a previous run of the same job is skipped.
    Exceptions raised by the callable are logged and the job keeps going.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Any]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.func = func
        self.thread: Optional[threading.Thread] = None
        self.stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self.runs = 0
        self.skipped = 0
        self.failures = 0
        self.last_run: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self) -> None:
        """Start the job thread; a no-op if it is already running."""
        if self.is_running:
            return

        self.stop_event.clear()
        self.thread = threading.Thread(
            target=self._loop, daemon=True, name=f"CacheJob-{self.name}"
        )
        self.thread.start()
        logger.debug(f"Cache job '{self.name}' started (every {self.interval}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> bool:
        """
        Stop the job and wait for its thread to exit.

        Returns:
            bool: True if the thread has exited
        """
        self.stop_event.set()
        if self.thread is None:
            return True

        if self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)
        stopped = not self.thread.is_alive()
        if stopped:
            self.thread = None
            logger.debug(f"Cache job '{self.name}' stopped")
        else:
            logger.warning(f"Cache job '{self.name}' did not stop within {timeout}s")
        return stopped

    def run_once(self) -> bool:
        """
        Run the job now on the calling thread.

        Returns:
            bool: False if the run was skipped because another run is in progress
        """
        if not self._run_lock.acquire(blocking=False):
            self.skipped += 1
            logger.debug(f"Cache job '{self.name}' skipped: previous run in progress")
            return False

        try:
            self.func()
            self.runs += 1
        except Exception as e:
            self.failures += 1
            logger.error(f"Cache job '{self.name}' failed: {e}", exc_info=True)
        finally:
            self.last_run = time.time()
            self._run_lock.release()
        return True

    def _loop(self) -> None:
        # Sleep first: the cache has just been loaded when jobs start
        while not self.stop_event.wait(self.interval):
            self.run_once()


class CacheScheduler:
    """Owns the sweep and snapshot jobs of one cache instance."""

    def __init__(
        self,
        sweep: Callable[[], Any],
        snapshot: Optional[Callable[[], Any]] = None,
        sweep_interval: float = 300,
        snapshot_interval: float = 600,
    ):
        self.sweep_job = PeriodicJob("sweep", sweep_interval, sweep)
        self.snapshot_job = (
            PeriodicJob("snapshot", snapshot_interval, snapshot)
            if snapshot is not None
            else None
        )
        self._lock = create_component_lock(f"cache_scheduler_{id(self)}")

    def jobs(self):
        return [job for job in (self.sweep_job, self.snapshot_job) if job is not None]

    @property
    def is_running(self) -> bool:
        return any(job.is_running for job in self.jobs())

    def start(self) -> None:
        with coordinated_lock(self._lock):
            for job in self.jobs():
                job.start()
        logger.info("Cache maintenance jobs started")

    def stop(self, flush: bool = True, timeout: Optional[float] = 5.0) -> bool:
        """
        Stop both jobs, then optionally run a final snapshot.

        Args:
            flush: Run the snapshot job once more after the threads exit
            timeout: Per-job join timeout in seconds

        Returns:
            bool: True if every job thread exited
        """
        with coordinated_lock(self._lock):
            stopped = all([job.stop(timeout) for job in self.jobs()])
            if flush and self.snapshot_job is not None:
                self.snapshot_job.run_once()
        logger.info("Cache maintenance jobs stopped")
        return stopped

    def close(self) -> None:
        unregister_lock(self._lock)

    def get_status(self) -> Dict[str, Any]:
        return {
            job.name: {
                "running": job.is_running,
                "interval": job.interval,
                "runs": job.runs,
                "skipped": job.skipped,
                "failures": job.failures,
                "last_run": job.last_run,
            }
            for job in self.jobs()
        }
