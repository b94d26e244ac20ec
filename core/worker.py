import threading
import time
from typing import Any, Callable, Optional

from .logging_core import get_logger

logger = get_logger(__name__)


class PeriodicWorker:
    """Runs ``job`` every ``interval`` seconds on a daemon thread.

    ``stop()`` sets the shutdown event; the current run finishes and no new
    run starts. ``run_once()`` executes the job inline and is what manual
    triggers and tests call.
    """

    def __init__(self, name: str, job: Callable[[], Any], interval: float):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.job = job
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            raise RuntimeError(f"Worker {self.name} already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"worker:{self.name}", daemon=True)
        self._thread.start()
        logger.info("Worker %s started (interval=%ss)", self.name, self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                # Keep the handle so start() refuses to launch a second loop.
                logger.warning("Worker %s still finishing its current run after %ss", self.name, timeout)
                return
            self._thread = None
        logger.info("Worker %s stopped", self.name)

    def run_once(self) -> Any:
        started = time.monotonic()
        try:
            return self.job()
        except Exception:
            self.failures += 1
            logger.exception("Worker %s: job failed", self.name)
            return None
        finally:
            self.runs += 1
            logger.debug("Worker %s: run finished in %.3fs", self.name, time.monotonic() - started)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            if self._stop.wait(self.interval):
                break
