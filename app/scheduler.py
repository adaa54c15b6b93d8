"""Fixed-interval background jobs.

Each job gets its own daemon thread. A job's next tick is counted from
the moment its callback returns, so ticks of one job never overlap while
different jobs run independently of each other.

Usage:
    from app.scheduler import Scheduler

    scheduler = Scheduler()
    scheduler.add_job("refresh", controller.refresh_network_data, interval=30.0)
    scheduler.start()
"""
import threading
from typing import Callable, Dict, List, Optional

from config import get_logger

logger = get_logger(__name__)


class IntervalTimer:
    """Calls ``callback`` every ``interval`` seconds on a daemon thread.

    Attributes:
        name: Job name, used for the thread name and in logs.
        interval: Time between the end of one tick and the start of the next.

    Example:
        >>> timer = IntervalTimer("save", store.flush, interval=30.0)
        >>> timer.start()
        >>> # Later...
        >>> timer.stop()
    """

    def __init__(self, name: str, callback: Callable[[], object], interval: float,
                 run_immediately: bool = False):
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive")
        self.name = name
        self._callback = callback
        self._interval = interval
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.tick_count = 0

    @property
    def interval(self) -> float:
        """Get the current interval."""
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        """Update interval; takes effect after the current wait."""
        with self._lock:
            self._interval = value

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _tick(self) -> None:
        try:
            self._callback()
        except Exception as e:
            # A failing job must not kill its timer thread
            logger.error(f"Scheduled job {self.name} failed: {e}", exc_info=True)
        self.tick_count += 1

    def _timer_loop(self) -> None:
        if self._run_immediately and not self._stop_event.is_set():
            self._tick()
        while not self._stop_event.wait(self._interval):
            self._tick()

    def start(self) -> None:
        """Start the timer in a background thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._timer_loop, daemon=True, name=f"job-{self.name}"
        )
        self._thread.start()
        logger.debug(f"IntervalTimer {self.name} started with interval {self._interval}s")

    def stop(self, timeout: Optional[float] = 1.0) -> None:
        """Stop the timer; waits briefly for an in-flight tick."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        logger.debug(f"IntervalTimer {self.name} stopped")


class Scheduler:
    """A named set of interval jobs started and stopped together."""

    def __init__(self):
        self._jobs: Dict[str, IntervalTimer] = {}
        self._running = False

    def add_job(self, name: str, callback: Callable[[], object], interval: float,
                run_immediately: bool = False) -> IntervalTimer:
        """Register a job; starts it right away if the scheduler is running."""
        if name in self._jobs:
            self._jobs[name].stop()
        timer = IntervalTimer(name, callback, interval, run_immediately=run_immediately)
        self._jobs[name] = timer
        if self._running:
            timer.start()
        return timer

    def remove_job(self, name: str) -> bool:
        timer = self._jobs.pop(name, None)
        if timer is None:
            return False
        timer.stop()
        return True

    def get_job(self, name: str) -> Optional[IntervalTimer]:
        return self._jobs.get(name)

    @property
    def job_names(self) -> List[str]:
        return list(self._jobs)

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for timer in self._jobs.values():
            timer.start()
        logger.info(f"Scheduler started with {len(self._jobs)} jobs")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for timer in self._jobs.values():
            timer.stop()
        logger.info("Scheduler stopped")
