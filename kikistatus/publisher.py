"""
Snapshot publisher: sole writer of the persisted status file.

publish() never blocks the caller. Writes are serialized through a single
pending slot: a snapshot submitted while a write is in flight waits there, and
a newer submission replaces it. Hooks follow the same discipline: each hook
has one runner task and one waiting slot, so a slow hook call is never
overtaken by an older snapshot. Hook outcomes only reach the log.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from kikistatus.config import STATUS_FILE
from kikistatus.models import Snapshot
from kikistatus.store import write_snapshot

logger = logging.getLogger(__name__)

Hook = Callable[[Snapshot], Awaitable[None]]


class SnapshotPublisher:
    def __init__(self, path=STATUS_FILE, hooks: Iterable[Hook] = ()) -> None:
        self.path = path
        self.hooks = list(hooks)
        self._pending: Optional[Snapshot] = None
        self._writer: Optional[asyncio.Task] = None
        self._hook_pending: dict[int, Snapshot] = {}
        self._hook_runners: dict[int, asyncio.Task] = {}
        self._last_published: Optional[Snapshot] = None
        self.writes = 0

    @property
    def last_published(self) -> Optional[Snapshot]:
        """The snapshot currently on disk, as far as this process knows."""
        return self._last_published

    def publish(self, snapshot: Snapshot) -> None:
        """Queue `snapshot` for writing. Must be called from the event loop thread."""
        self._pending = snapshot
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._drain(), name="kiki-publish")

    async def _drain(self) -> None:
        while self._pending is not None:
            snapshot, self._pending = self._pending, None
            if snapshot.same_content(self._last_published):
                continue
            try:
                await asyncio.to_thread(write_snapshot, self.path, snapshot)
            except OSError as e:
                # Left unpublished so the next tick submits it again
                logger.error(f"Failed to write status to {self.path}: {e}")
                continue
            self._last_published = snapshot
            self.writes += 1
            logger.info(f"Updated local status: {snapshot.state}")
            self._start_hooks(snapshot)

    def _start_hooks(self, snapshot: Snapshot) -> None:
        # One runner per hook; a snapshot waiting for a busy hook is replaced by a newer one
        for i, hook in enumerate(self.hooks):
            self._hook_pending[i] = snapshot
            runner = self._hook_runners.get(i)
            if runner is None or runner.done():
                self._hook_runners[i] = asyncio.create_task(self._drain_hook(i, hook))

    async def _drain_hook(self, i: int, hook: Hook) -> None:
        while i in self._hook_pending:
            await self._run_hook(hook, self._hook_pending.pop(i))

    async def _run_hook(self, hook: Hook, snapshot: Snapshot) -> None:
        try:
            await hook(snapshot)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Publish hook {hook!r} failed: {type(e).__name__}: {e}")

    async def flush(self, include_hooks: bool = False) -> None:
        """Wait until the pending slot is written (and, optionally, queued hook runs finish)."""
        if self._writer is not None:
            await self._writer
        if include_hooks:
            runners = [t for t in self._hook_runners.values() if not t.done()]
            if runners:
                await asyncio.gather(*runners, return_exceptions=True)

    async def close(self) -> None:
        """Finish the in-flight write and cancel hooks still running."""
        await self.flush()
        self._hook_pending.clear()
        runners = list(self._hook_runners.values())
        for task in runners:
            task.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
