"""Background polling threads."""

import logging
import threading

logger = logging.getLogger(__name__)


class PollingMonitor:
    """Background thread that calls ``tick`` every ``poll_interval`` seconds.

    A failing tick is logged and the loop carries on with the next one.
    Subclasses implement ``tick``.
    """

    name = "polling-monitor"

    def __init__(self, poll_interval: float = 5.0):
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the monitor thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("%s started (every %.1fs)", self.name, self.poll_interval)

    def stop(self):
        """Signal the monitor thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("%s stopped", self.name)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self):
        """Main monitor loop."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Error in %s loop", self.name)
            self._stop_event.wait(self.poll_interval)

    def tick(self):
        raise NotImplementedError
