"""
PeriodicTask - in-process polling loop.

Each task owns one daemon thread and one stop Event. A stop request is
honoured between cycles and, for jobs that accept it, between items
within a cycle, so an in-flight unit of work always commits or rolls
back before the thread exits.
"""
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ...clock import Clock, SystemClock

logger = logging.getLogger(__name__)

# A job receives a should_stop() callable it may poll between items
Job = Callable[[Callable[[], bool]], Any]


class PeriodicTask:
    """
    Runs a job on a fixed interval until stopped.

    run_once() is public so operators (and tests) can trigger a cycle
    on demand; it shares a lock with the loop so cycles never overlap.
    """

    def __init__(
        self,
        name: str,
        job: Job,
        interval_seconds: float,
        clock: Optional[Clock] = None,
        run_on_start: bool = True,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self._job = job
        self._clock = clock or SystemClock()
        self._run_on_start = run_on_start
        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        self.run_count = 0
        self.error_count = 0
        self.consecutive_failures = 0
        self.last_run_at: Optional[datetime] = None
        self.last_success_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_result: Any = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def run_once(self) -> Any:
        """Run one cycle now. Exceptions are recorded and re-raised."""
        with self._run_lock:
            self.last_run_at = self._clock.now()
            self.run_count += 1
            try:
                result = self._job(self._stop_event.is_set)
            except Exception as e:
                self.error_count += 1
                self.consecutive_failures += 1
                self.last_error = str(e)
                raise
            self.consecutive_failures = 0
            self.last_error = None
            self.last_success_at = self._clock.now()
            self.last_result = result
            return result

    def start(self) -> None:
        """Start the loop in a background thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"lifecycle-{self.name}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Task {self.name} started (every {self.interval_seconds}s)")

    def request_stop(self) -> None:
        """Signal stop without waiting."""
        self._stop_event.set()

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current cycle to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Task {self.name} did not stop within {timeout}s")
        logger.info(f"Task {self.name} stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "consecutive_failures": self.consecutive_failures,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_error": self.last_error,
        }

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        if not self._run_on_start:
            self._stop_event.wait(timeout=self.interval_seconds)
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception(f"Task {self.name} cycle failed")
            # Wait for interval or until stopped
            self._stop_event.wait(timeout=self.interval_seconds)
