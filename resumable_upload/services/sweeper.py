"""Background thread that periodically removes expired upload sessions."""
import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class SessionSweeper:
    """Runs `manager.cleanup_expired()` every `interval` seconds until stopped"""

    def __init__(self, manager, interval: float = 300.0):
        self.manager = manager
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="session-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Session sweeper started (every {self.interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Session sweeper stopped")

    def sweep_once(self) -> int:
        try:
            return len(self.manager.cleanup_expired())
        except Exception as e:
            logger.error(f"Session sweep failed: {e}")
            return 0

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.sweep_once()
