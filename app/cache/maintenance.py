"""
Background cache maintenance: periodic expiry sweep and metrics report.
"""
import logging
import threading
import time
from typing import Any, Callable, Optional

logger = logging.getLogger("cache.maintenance")


class MaintenanceScheduler:
    """
    Daemon thread running two periodic jobs.

    Failures in a job are logged and the schedule continues; neither job
    affects cache correctness.
    """

    def __init__(
        self,
        cleanup_fn: Callable[[], Any],
        report_fn: Callable[[], Any],
        cleanup_interval: float = 300.0,
        report_interval: float = 1800.0,
    ):
        if cleanup_interval <= 0 or report_interval <= 0:
            raise ValueError("Maintenance intervals must be positive")
        self._cleanup_fn = cleanup_fn
        self._report_fn = report_fn
        self._cleanup_interval = cleanup_interval
        self._report_interval = report_interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run,
            name="cache-maintenance",
            daemon=True,
        )
        self._thread.start()
        logger.debug(
            f"Maintenance started (cleanup every {self._cleanup_interval}s, "
            f"report every {self._report_interval}s)"
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        next_cleanup = time.monotonic() + self._cleanup_interval
        next_report = time.monotonic() + self._report_interval
        tick = min(self._cleanup_interval, self._report_interval)

        while not self._stop.wait(tick):
            now = time.monotonic()
            if now >= next_cleanup:
                self._run_job("cleanup", self._cleanup_fn)
                next_cleanup = now + self._cleanup_interval
            if now >= next_report:
                self._run_job("report", self._report_fn)
                next_report = now + self._report_interval

    def _run_job(self, name: str, job: Callable[[], Any]) -> None:
        try:
            job()
        except Exception as e:
            logger.warning(f"Cache maintenance {name} failed: {e}")
