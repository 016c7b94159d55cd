import logging
import threading
from typing import Optional

from flaggate.exceptions import ReloadError
from flaggate.services.snapshot import FlagSource, SnapshotManager

logger = logging.getLogger(__name__)


class RefreshPoller:
    """Background thread pulling from a source every ``interval`` seconds.

    A failed cycle leaves the published store in place; the next cycle tries again.
    """

    def __init__(self, manager: SnapshotManager, source: FlagSource, interval: float, timeout: Optional[float] = None):
        self.manager = manager
        self.source = source
        self.interval = interval
        self.timeout = timeout
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> Optional[int]:
        try:
            return self.manager.refresh(self.source, timeout=self.timeout)
        except ReloadError as exc:
            logger.warning("scheduled refresh from %r failed: %s", self.source, exc)
            return None

    def _worker(self):
        while not self._stop.wait(self.interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception("unexpected error in flag refresh loop")

    def start(self):
        self._thread = threading.Thread(target=self._worker, name="flaggate-poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
