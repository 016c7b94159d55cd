import logging
import threading
from typing import Optional

import redis

from flaggate.exceptions import ReloadError
from flaggate.services.snapshot import FlagSource, SnapshotManager

logger = logging.getLogger(__name__)

CHANNEL = "flag_updates"


def get_redis(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True)


class UpdateSubscriber:
    """Refreshes the flag store whenever a key is published on ``flag_updates``."""

    def __init__(self, manager: SnapshotManager, source: FlagSource, client: redis.Redis, channel: str = CHANNEL, retry_seconds: float = 5.0):
        self.manager = manager
        self.source = source
        self.client = client
        self.channel = channel
        self.retry_seconds = retry_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def handle(self, message: dict) -> Optional[int]:
        if message.get("type") != "message":
            return None
        logger.info("flag update published for %s, refreshing", message.get("data"))
        try:
            return self.manager.refresh(self.source)
        except ReloadError as exc:
            logger.warning("refresh after update of %s failed: %s", message.get("data"), exc)
            return None

    def run(self):
        while not self._stop.is_set():
            pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            try:
                pubsub.subscribe(self.channel)
                while not self._stop.is_set():
                    message = pubsub.get_message(timeout=1.0)
                    if message:
                        self.handle(message)
            except redis.RedisError:
                logger.exception("lost subscription to %s, retrying in %ss", self.channel, self.retry_seconds)
                self._stop.wait(self.retry_seconds)
            finally:
                pubsub.close()

    def start(self):
        self._thread = threading.Thread(target=self.run, name="flaggate-subscriber", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
