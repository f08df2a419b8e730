"""
Unit tests for the viewer-side StatusPoller.

Sources are served by httpx.MockTransport; the monotonic clock and the wall
clock are both injected so cool-downs and staleness are tested without sleeping.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from kikistatus.client import (
    BAD_STATUS,
    MALFORMED,
    OK,
    SKIPPED,
    TIMEOUT,
    TRANSPORT_ERROR,
    StatusPoller,
    build_sources,
)
from kikistatus.models import (
    DISCONNECTED,
    IDLE,
    LOCAL,
    REMOTE_MIRROR,
    STATIC_FALLBACK,
    THINKING,
    WORKING,
    Source,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

LOCAL_SRC = Source(LOCAL, "http://127.0.0.1:3847/status", 0.2, cooldown=30)
STATIC_SRC = Source(STATIC_FALLBACK, "http://127.0.0.1:3847/static/status.json", 0.2, cache_bust=True)
MIRROR_SRC = Source(REMOTE_MIRROR, "https://mirror.example/status.json", 0.5, min_interval=30)


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

class FakeClock:
    def __init__(self) -> None:
        self.mono = 1000.0
        self.wall = NOW

    def monotonic(self) -> float:
        return self.mono

    def now(self) -> datetime:
        return self.wall

    def advance(self, seconds: float) -> None:
        self.mono += seconds
        self.wall += timedelta(seconds=seconds)


class Render:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def __call__(self, state, message, subagents, connected) -> None:
        self.calls.append((state, message, subagents, connected))

    @property
    def last(self):
        return self.calls[-1]


def _key(url) -> tuple[str, str]:
    url = httpx.URL(url)
    return url.host, url.path


class FakeSources:
    """Routes requests by host and path to a per-source behaviour that tests can swap."""

    def __init__(self) -> None:
        self.behaviour = {}
        self.requests: list[httpx.Request] = []

    def set(self, source: Source, behaviour) -> None:
        self.behaviour[_key(source.url)] = behaviour

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        behaviour = self.behaviour.get(_key(request.url))
        if behaviour is None:
            raise httpx.ConnectError("connection refused", request=request)
        if isinstance(behaviour, Exception):
            raise behaviour
        if isinstance(behaviour, httpx.Response):
            # Fresh copy per request so one canned answer can be served repeatedly
            return httpx.Response(behaviour.status_code, headers=behaviour.headers,
                                  content=behaviour.content)
        return await behaviour(request)

    def hits(self, source: Source) -> int:
        return sum(1 for r in self.requests if _key(r.url) == _key(source.url))


def wire(state=WORKING, message="crafting logic...", subagents=0, age=5.0):
    body = {"state": state, "message": message, "subagents": subagents}
    if age is not None:
        body["lastUpdate"] = (NOW - timedelta(seconds=age)).isoformat()
    return httpx.Response(200, json=body)


def make_poller(fake, render, clock, sources=(LOCAL_SRC, STATIC_SRC), freshness=120):
    return StatusPoller(
        sources, render,
        interval=0.01,
        freshness_window=freshness,
        transport=httpx.MockTransport(fake.handler),
        clock=clock.monotonic,
        now=clock.now,
    )


@pytest.fixture
def fake():
    return FakeSources()


@pytest.fixture
def render():
    return Render()


@pytest.fixture
def clock():
    return FakeClock()


# ─────────────────────────────────────────────
# Source ranking and fallback
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_local_source_wins(fake, render, clock):
    fake.set(LOCAL_SRC, wire(WORKING))
    fake.set(STATIC_SRC, wire(IDLE))
    poller = make_poller(fake, render, clock)

    conn = await poller.poll_once()

    assert conn.reachable and conn.active_source == LOCAL
    assert conn.last_successful_fetch == NOW
    assert render.calls == [(WORKING, "crafting logic...", 0, True)]
    assert fake.hits(STATIC_SRC) == 0
    await poller.aclose()


@pytest.mark.asyncio
async def test_falls_back_to_static_when_local_down(fake, render, clock):
    fake.set(STATIC_SRC, wire(THINKING, "contemplating architecture..."))
    poller = make_poller(fake, render, clock)

    conn = await poller.poll_once()

    assert conn.reachable
    assert conn.active_source == STATIC_FALLBACK
    assert render.last == (THINKING, "contemplating architecture...", 0, True)
    await poller.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("local_response,expected_kind", [
    (httpx.Response(500, json={"error": "Failed to read status"}), BAD_STATUS),
    (httpx.Response(200, content=b"<html>oops</html>"), MALFORMED),
    (httpx.Response(200, json=["not", "an", "object"]), MALFORMED),
    (httpx.Response(200, content=b'{"state": "working", "subagents": 1e999}'), MALFORMED),
    (httpx.ConnectError("refused"), TRANSPORT_ERROR),
])
async def test_bad_local_answers_fall_through(fake, render, clock, local_response, expected_kind):
    fake.set(LOCAL_SRC, local_response)
    fake.set(STATIC_SRC, wire(WORKING))
    poller = make_poller(fake, render, clock)

    outcomes = await poller.attempt_sources()

    assert [o.kind for o in outcomes] == [expected_kind, OK]
    assert outcomes[-1].source.kind == STATIC_FALLBACK
    await poller.aclose()


@pytest.mark.asyncio
async def test_hung_source_is_aborted_and_next_tried(fake, render, clock):
    async def hang(request):
        await asyncio.sleep(30)
        return httpx.Response(200, json={})

    fake.set(LOCAL_SRC, hang)
    fake.set(STATIC_SRC, wire(WORKING))
    poller = make_poller(fake, render, clock)

    outcomes = await asyncio.wait_for(poller.attempt_sources(), timeout=5)

    assert [o.kind for o in outcomes] == [TIMEOUT, OK]
    await poller.aclose()


# ─────────────────────────────────────────────
# Disconnection
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_all_sources_failing_reports_disconnected(fake, render, clock):
    fake.set(LOCAL_SRC, wire(WORKING, "crafting logic...", age=5))
    poller = make_poller(fake, render, clock)
    await poller.poll_once()

    fake.behaviour.clear()
    clock.advance(2)
    conn = await poller.poll_once()

    assert not conn.reachable
    assert conn.active_source is None
    assert conn.last_successful_fetch == NOW
    # Message and helper count stay as they were
    assert render.last == (DISCONNECTED, "crafting logic...", 0, False)
    assert poller.displayed == (WORKING, "crafting logic...", 0)
    await poller.aclose()


@pytest.mark.asyncio
async def test_disconnected_is_emitted_once(fake, render, clock):
    poller = make_poller(fake, render, clock)
    await poller.poll_once()
    clock.advance(2)
    await poller.poll_once()

    assert render.calls == [(DISCONNECTED, "", 0, False)]
    await poller.aclose()


@pytest.mark.asyncio
async def test_reconnect_restores_display(fake, render, clock):
    fake.set(STATIC_SRC, wire(WORKING))
    poller = make_poller(fake, render, clock)
    await poller.poll_once()

    fake.behaviour.clear()
    await poller.poll_once()
    fake.set(STATIC_SRC, wire(WORKING))
    await poller.poll_once()

    assert [c[0] for c in render.calls] == [WORKING, DISCONNECTED, WORKING]
    assert render.last[3] is True
    await poller.aclose()


@pytest.mark.asyncio
async def test_staleness_applies_while_disconnected(fake, render, clock):
    fake.set(STATIC_SRC, wire(WORKING, age=100))
    poller = make_poller(fake, render, clock)
    await poller.poll_once()
    assert render.last[0] == WORKING

    fake.behaviour.clear()
    clock.advance(60)  # last snapshot is now 160s old
    await poller.poll_once()

    assert render.last == (DISCONNECTED, "", 0, False)
    assert poller.displayed == (IDLE, "", 0)
    await poller.aclose()


# ─────────────────────────────────────────────
# Change-only emission and staleness
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_identical_payloads_render_once(fake, render, clock):
    fake.set(LOCAL_SRC, wire(WORKING))
    poller = make_poller(fake, render, clock)
    for _ in range(3):
        await poller.poll_once()
        clock.advance(2)

    fake.set(LOCAL_SRC, wire(WORKING, "another phrase"))
    await poller.poll_once()

    assert render.calls == [
        (WORKING, "crafting logic...", 0, True),
        (WORKING, "another phrase", 0, True),
    ]
    await poller.aclose()


@pytest.mark.asyncio
async def test_subagent_count_change_is_rendered(fake, render, clock):
    fake.set(LOCAL_SRC, wire("delegating", "delegating to 1 helper", 1))
    poller = make_poller(fake, render, clock)
    await poller.poll_once()
    fake.set(LOCAL_SRC, wire("delegating", "delegating to 1 helper", 2))
    await poller.poll_once()

    assert [c[2] for c in render.calls] == [1, 2]
    await poller.aclose()


@pytest.mark.asyncio
async def test_stale_snapshot_forces_idle(fake, render, clock):
    fake.set(LOCAL_SRC, wire(WORKING, age=5))
    poller = make_poller(fake, render, clock)
    await poller.poll_once()

    fake.set(LOCAL_SRC, wire(WORKING, age=121))
    await poller.poll_once()

    assert render.last == (IDLE, "", 0, True)
    assert poller.connection.reachable
    await poller.aclose()


@pytest.mark.asyncio
async def test_stale_snapshot_when_already_idle_changes_nothing(fake, render, clock):
    fake.set(LOCAL_SRC, wire(IDLE, "observing the digital horizon...", age=5))
    poller = make_poller(fake, render, clock)
    await poller.poll_once()

    fake.set(LOCAL_SRC, wire(THINKING, "contemplating architecture...", age=600))
    await poller.poll_once()

    assert render.calls == [(IDLE, "observing the digital horizon...", 0, True)]
    await poller.aclose()


@pytest.mark.asyncio
async def test_missing_timestamp_skips_staleness(fake, render, clock):
    fake.set(LOCAL_SRC, wire(WORKING, age=None))
    poller = make_poller(fake, render, clock)
    await poller.poll_once()

    assert render.last == (WORKING, "crafting logic...", 0, True)
    await poller.aclose()


# ─────────────────────────────────────────────
# Cool-down, mirror pacing, request shape
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_failed_local_source_cools_down(fake, render, clock):
    fake.set(STATIC_SRC, wire(WORKING))
    poller = make_poller(fake, render, clock)

    await poller.poll_once()
    assert fake.hits(LOCAL_SRC) == 1

    clock.advance(10)
    await poller.poll_once()
    assert fake.hits(LOCAL_SRC) == 1  # skipped during cool-down
    assert fake.hits(STATIC_SRC) == 2

    clock.advance(21)
    fake.set(LOCAL_SRC, wire(THINKING))
    conn = await poller.poll_once()
    assert fake.hits(LOCAL_SRC) == 2
    assert conn.active_source == LOCAL
    await poller.aclose()


@pytest.mark.asyncio
async def test_mirror_contacted_at_most_once_per_interval(fake, render, clock):
    fake.set(MIRROR_SRC, wire(THINKING))
    poller = make_poller(fake, render, clock, sources=(LOCAL_SRC, STATIC_SRC, MIRROR_SRC))

    await poller.poll_once()
    clock.advance(5)
    conn = await poller.poll_once()

    assert fake.hits(MIRROR_SRC) == 1
    assert conn.reachable and conn.active_source == REMOTE_MIRROR
    assert render.calls == [(THINKING, "crafting logic...", 0, True)]

    clock.advance(30)
    await poller.poll_once()
    assert fake.hits(MIRROR_SRC) == 2
    await poller.aclose()


@pytest.mark.asyncio
async def test_recently_failed_mirror_is_skipped(fake, render, clock):
    poller = make_poller(fake, render, clock, sources=(MIRROR_SRC,))
    await poller.poll_once()
    clock.advance(5)
    outcomes = await poller.attempt_sources()

    assert [o.kind for o in outcomes] == [SKIPPED]
    assert fake.hits(MIRROR_SRC) == 1
    await poller.aclose()


@pytest.mark.asyncio
async def test_request_carries_token_and_cache_buster(fake, render, clock):
    src = Source(STATIC_FALLBACK, "http://127.0.0.1:3847/static/status.json", 0.2,
                 cache_bust=True, token="secret-token")
    fake.set(src, wire(WORKING))
    poller = make_poller(fake, render, clock, sources=(src,))
    await poller.poll_once()

    req = fake.requests[-1]
    assert req.headers["authorization"] == "Bearer secret-token"
    assert "t" in req.url.params
    await poller.aclose()


# ─────────────────────────────────────────────
# Render boundary and loop
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_async_render_boundary_awaited(fake, clock):
    seen = []

    async def on_change(state, message, subagents, connected):
        seen.append(state)

    fake.set(LOCAL_SRC, wire(WORKING))
    poller = make_poller(fake, on_change, clock)
    await poller.poll_once()

    assert seen == [WORKING]
    await poller.aclose()


@pytest.mark.asyncio
async def test_render_boundary_errors_do_not_escape(fake, clock):
    def on_change(*args):
        raise RuntimeError("animation broke")

    fake.set(LOCAL_SRC, wire(WORKING))
    poller = make_poller(fake, on_change, clock)
    conn = await poller.poll_once()

    assert conn.reachable
    await poller.aclose()


@pytest.mark.asyncio
async def test_run_polls_immediately_and_stops(fake, render, clock):
    fake.set(LOCAL_SRC, wire(WORKING))
    poller = make_poller(fake, render, clock)
    poller.interval = 60

    task = asyncio.create_task(poller.run())
    for _ in range(100):
        if render.calls:
            break
        await asyncio.sleep(0.01)
    poller.stop()
    await asyncio.wait_for(task, timeout=2)

    assert render.calls == [(WORKING, "crafting logic...", 0, True)]


@pytest.mark.asyncio
async def test_stop_before_run_returns_promptly(fake, render, clock):
    fake.set(LOCAL_SRC, wire(WORKING))
    poller = make_poller(fake, render, clock)
    poller.interval = 60

    task = asyncio.create_task(poller.run())
    poller.stop()
    await asyncio.wait_for(task, timeout=2)

    assert render.calls == []
    assert poller._http is None


@pytest.mark.asyncio
async def test_run_survives_a_failing_tick(fake, render, clock, monkeypatch):
    fake.set(LOCAL_SRC, wire(WORKING))
    poller = make_poller(fake, render, clock)
    real_poll_once = poller.poll_once
    ticks = []

    async def flaky_poll_once():
        ticks.append(1)
        if len(ticks) == 1:
            raise OverflowError("cannot convert float infinity to integer")
        return await real_poll_once()

    monkeypatch.setattr(poller, "poll_once", flaky_poll_once)
    task = asyncio.create_task(poller.run())
    for _ in range(200):
        if render.calls:
            break
        await asyncio.sleep(0.01)
    poller.stop()
    await asyncio.wait_for(task, timeout=2)

    assert len(ticks) >= 2
    assert render.calls == [(WORKING, "crafting logic...", 0, True)]


def test_needs_a_source(render):
    with pytest.raises(ValueError):
        StatusPoller([], render)


def test_build_sources_defaults():
    kinds = [s.kind for s in build_sources()]
    assert kinds[:2] == [LOCAL, STATIC_FALLBACK]
    local = build_sources()[0]
    assert local.cooldown > 0
    assert local.timeout <= build_sources()[1].timeout
