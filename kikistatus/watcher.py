"""
The watcher tick loop: classify on a fixed interval, publish on change.
"""
import asyncio
import dataclasses
import logging
from typing import Optional

from kikistatus.classifier import ActivityClassifier
from kikistatus.config import WATCH_INTERVAL
from kikistatus.models import Snapshot
from kikistatus.publisher import SnapshotPublisher

logger = logging.getLogger(__name__)


class StatusWatcher:
    def __init__(self, classifier: ActivityClassifier, publisher: SnapshotPublisher,
                 interval: float = WATCH_INTERVAL) -> None:
        self.classifier = classifier
        self.publisher = publisher
        self.interval = interval
        self._stopped = asyncio.Event()

    async def tick(self, now: Optional[float] = None) -> Optional[Snapshot]:
        """One classification round. Returns the snapshot handed to the publisher, if any."""
        previous = self.publisher.last_published
        snapshot = await asyncio.to_thread(self.classifier.tick, previous, now)
        if snapshot is None:
            return None
        if previous is not None and previous.last_update and snapshot.last_update \
                and snapshot.last_update < previous.last_update:
            # Wall clock stepped back; keep published timestamps non-decreasing
            snapshot = dataclasses.replace(snapshot, last_update=previous.last_update)
        self.publisher.publish(snapshot)
        return snapshot

    async def run(self) -> None:
        """Tick immediately, then every `interval` seconds until stop() is called."""
        logger.info(f"Status watcher started (every {self.interval}s, "
                    f"sessions={self.classifier.sessions_dir})")
        try:
            while not self._stopped.is_set():
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Watcher tick failed")
                try:
                    await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.publisher.close()
            logger.info("Status watcher stopped")

    def stop(self) -> None:
        self._stopped.set()
