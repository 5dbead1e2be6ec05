import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """Runs ``task`` every ``interval`` seconds on a daemon thread until stopped."""

    def __init__(self, name: str, task: Callable[[], None], interval: float) -> None:
        self.name = name
        self.interval = interval
        self._task = task
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        with self._lock:
            if self._is_running:
                return

            self._stop_event.clear()
            self._is_running = True
            self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            if not self._is_running:
                return

            self._is_running = False
            self._stop_event.set()

        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"{self.name} did not stop within {timeout}s")
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._task()
            except Exception:
                logger.exception(f"{self.name} tick failed")
            self._stop_event.wait(self.interval)

    def __enter__(self) -> "PeriodicWorker":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
