"""
Viewer-side status poller.

Each tick walks a ranked list of sources (local server, static file, remote
mirror), one at a time, and takes the first well-formed snapshot. Every
attempt is bounded by the source's timeout and aborted in place when it runs
over. The outcome of every attempt is a FetchOutcome value rather than an
exception, and the tick turns the outcomes into at most one call to the render
boundary:

    on_status_changed(state, message, subagents, connected)

which is only invoked when one of those four values actually changed.
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

import httpx

from kikistatus.config import (
    FRESHNESS_WINDOW,
    LOCAL_COOLDOWN,
    LOCAL_TIMEOUT,
    LOCAL_URL,
    MIRROR_MIN_INTERVAL,
    MIRROR_TIMEOUT,
    MIRROR_URL,
    POLL_INTERVAL,
    SOURCE_TOKEN,
    STATIC_TIMEOUT,
    STATIC_URL,
)
from kikistatus.models import (
    DISCONNECTED,
    IDLE,
    LOCAL,
    REMOTE_MIRROR,
    STATIC_FALLBACK,
    ConnectionState,
    Snapshot,
    Source,
)

logger = logging.getLogger(__name__)

# FetchOutcome kinds
OK = "ok"
TIMEOUT = "timeout"
TRANSPORT_ERROR = "transport_error"
BAD_STATUS = "bad_status"
MALFORMED = "malformed"
SKIPPED = "skipped"

RenderBoundary = Callable[[str, str, int, bool], Any]


@dataclass(frozen=True)
class FetchOutcome:
    kind: str                          # ok | timeout | transport_error | bad_status | malformed | skipped
    source: Source
    snapshot: Optional[Snapshot] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.kind == OK


def build_sources() -> list[Source]:
    """The configured sources, fastest first. The mirror is only added when a URL is set."""
    token = SOURCE_TOKEN or None
    sources = [
        Source(LOCAL, LOCAL_URL, LOCAL_TIMEOUT, cooldown=LOCAL_COOLDOWN, token=token),
        Source(STATIC_FALLBACK, STATIC_URL, STATIC_TIMEOUT, cache_bust=True, token=token),
    ]
    if MIRROR_URL:
        sources.append(Source(REMOTE_MIRROR, MIRROR_URL, MIRROR_TIMEOUT,
                              min_interval=MIRROR_MIN_INTERVAL, cache_bust=True, token=token))
    return sources


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusPoller:
    def __init__(
        self,
        sources: Iterable[Source],
        on_status_changed: RenderBoundary,
        interval: float = POLL_INTERVAL,
        freshness_window: float = FRESHNESS_WINDOW,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.sources = list(sources)
        if not self.sources:
            raise ValueError("StatusPoller needs at least one source")
        self.on_status_changed = on_status_changed
        self.interval = interval
        self.freshness_window = freshness_window
        self._transport = transport
        self._clock = clock
        self._now = now
        self._http: Optional[httpx.AsyncClient] = None

        # Per-source bookkeeping, keyed by URL
        self._down_until: dict[str, float] = {}
        self._last_contact: dict[str, float] = {}
        self._last_good: dict[str, Snapshot] = {}

        # (state, message, subagents) currently on screen, not counting the
        # disconnected overlay
        self.displayed: tuple[str, str, int] = (IDLE, "", 0)
        self.last_snapshot: Optional[Snapshot] = None
        self.connection = ConnectionState(reachable=False, active_source=None, last_successful_fetch=None)
        self._last_emitted: Optional[tuple[str, str, int, bool]] = None
        self._stopped = asyncio.Event()

    # ─────────────────────────────────────────────
    # Single source attempt
    # ─────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(transport=self._transport, follow_redirects=True)
        return self._http

    async def fetch(self, source: Source) -> FetchOutcome:
        """Try one source once. Never raises for network or payload problems."""
        started = self._clock()
        if source.min_interval and source.url in self._last_contact \
                and started - self._last_contact[source.url] < source.min_interval:
            cached = self._last_good.get(source.url)
            if cached is None:
                return FetchOutcome(SKIPPED, source, detail="contacted recently")
            return FetchOutcome(OK, source, cached, detail="cached")
        self._last_contact[source.url] = started

        headers = {"Accept": "application/json"}
        if source.token:
            headers["Authorization"] = f"Bearer {source.token}"
        params = {"t": str(int(time.time() * 1000))} if source.cache_bust else None

        try:
            r = await asyncio.wait_for(
                self._client().get(source.url, params=params, headers=headers, timeout=source.timeout),
                timeout=source.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return self._failed(FetchOutcome(TIMEOUT, source, detail=f"no answer within {source.timeout}s"))
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return self._failed(FetchOutcome(TRANSPORT_ERROR, source, detail=f"{type(e).__name__}: {e}"))

        if r.status_code != 200:
            return self._failed(FetchOutcome(BAD_STATUS, source, detail=f"HTTP {r.status_code}"))
        try:
            snapshot = Snapshot.from_wire(r.json())
        except ValueError as e:
            return self._failed(FetchOutcome(MALFORMED, source, detail=str(e)))

        self._down_until.pop(source.url, None)
        self._last_good[source.url] = snapshot
        return FetchOutcome(OK, source, snapshot)

    def _failed(self, outcome: FetchOutcome) -> FetchOutcome:
        source = outcome.source
        self._last_good.pop(source.url, None)
        if source.cooldown:
            self._down_until[source.url] = self._clock() + source.cooldown
        logger.debug(f"{source.kind} source failed ({outcome.kind}): {outcome.detail}")
        return outcome

    def _cooling_down(self, source: Source) -> bool:
        until = self._down_until.get(source.url)
        return until is not None and self._clock() < until

    # ─────────────────────────────────────────────
    # One tick
    # ─────────────────────────────────────────────

    async def attempt_sources(self) -> list[FetchOutcome]:
        """Walk the ranked sources until one succeeds. The last outcome is the winner, if any."""
        outcomes = []
        for source in self.sources:
            if self._cooling_down(source):
                continue
            outcome = await self.fetch(source)
            outcomes.append(outcome)
            if outcome.ok:
                break
        return outcomes

    def _is_stale(self, snapshot: Optional[Snapshot], now: datetime) -> bool:
        if snapshot is None:
            return False
        age = snapshot.age(now)
        return age is not None and age > self.freshness_window

    def _reset_if_stale(self, snapshot: Optional[Snapshot], now: datetime) -> bool:
        if not self._is_stale(snapshot, now):
            return False
        if self.displayed[0] != IDLE:
            logger.info(f"Status is stale (last update {snapshot.last_update.isoformat()}); showing idle")
            self.displayed = (IDLE, "", 0)
        return True

    async def poll_once(self) -> ConnectionState:
        """Run one tick: fetch, update connection state, and notify the render boundary on change."""
        outcomes = await self.attempt_sources()
        now = self._now()
        winner = outcomes[-1] if outcomes and outcomes[-1].ok else None

        if winner is None:
            if self.connection.reachable or self._last_emitted is None:
                logger.warning("All status sources unreachable: "
                               + ", ".join(f"{o.source.kind}={o.kind}" for o in outcomes))
            self.connection = ConnectionState(False, None, self.connection.last_successful_fetch)
            self._reset_if_stale(self.last_snapshot, now)
            _, message, subagents = self.displayed
            await self._emit(DISCONNECTED, message, subagents, False)
            return self.connection

        snapshot = winner.snapshot
        if winner.source.kind != self.connection.active_source:
            logger.info(f"Status source: {winner.source.kind} ({winner.source.url})")
        self.connection = ConnectionState(True, winner.source.kind, now)
        self.last_snapshot = snapshot
        if not self._reset_if_stale(snapshot, now):
            self.displayed = (snapshot.state, snapshot.message, snapshot.subagents)
        state, message, subagents = self.displayed
        await self._emit(state, message, subagents, True)
        return self.connection

    async def _emit(self, state: str, message: str, subagents: int, connected: bool) -> bool:
        key = (state, message, subagents, connected)
        if key == self._last_emitted:
            return False
        self._last_emitted = key
        try:
            result = self.on_status_changed(state, message, subagents, connected)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Render boundary raised")
        return True

    # ─────────────────────────────────────────────
    # Loop
    # ─────────────────────────────────────────────

    async def run(self) -> None:
        """Poll immediately, then every `interval` seconds until stop() is called."""
        try:
            while not self._stopped.is_set():
                try:
                    await self.poll_once()
                except Exception:
                    logger.exception("Poll tick failed")
                try:
                    await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.aclose()

    def stop(self) -> None:
        self._stopped.set()

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
