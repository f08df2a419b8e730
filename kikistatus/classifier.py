"""
Activity classifier.

Turns "seconds since the last session write" plus the number of live subagents
into a Snapshot using a threshold ladder:

    elapsed <  burst_window   -> working
    elapsed <  settle_window  -> thinking
    elapsed >  sleep_window   -> sleeping
    otherwise                 -> idle

Live subagents override everything except sleeping.
"""
import logging
import math
import time
from datetime import datetime, timezone
from typing import Optional

from kikistatus import signals
from kikistatus.config import (
    BURST_WINDOW,
    SESSION_SUFFIX,
    SESSIONS_DIR,
    SETTLE_WINDOW,
    SLEEP_WINDOW,
    SUBAGENT_REGISTRY,
    SUBAGENT_WINDOW,
)
from kikistatus.models import DELEGATING, IDLE, SLEEPING, THINKING, WORKING, Snapshot

logger = logging.getLogger(__name__)

PHRASES = {
    WORKING: "crafting logic...",
    THINKING: "contemplating architecture...",
    IDLE: "observing the digital horizon...",
    SLEEPING: "dormant.",
}


def delegation_message(count: int) -> str:
    noun = "helper" if count == 1 else "helpers"
    return f"delegating to {count} {noun}"


def classify(elapsed: float, subagents: int = 0,
             burst_window: float = BURST_WINDOW,
             settle_window: float = SETTLE_WINDOW,
             sleep_window: float = SLEEP_WINDOW) -> tuple[str, str]:
    """Return (state, message) for the given seconds-since-signal and subagent count."""
    if elapsed < burst_window:
        state = WORKING
    elif elapsed < settle_window:
        state = THINKING
    elif elapsed > sleep_window:
        state = SLEEPING
    else:
        state = IDLE

    # A long enough silence means the operator is away, helpers or not
    if subagents > 0 and state != SLEEPING:
        return DELEGATING, delegation_message(subagents)
    return state, PHRASES[state]


class ActivityClassifier:
    """Reads the filesystem signals and decides the current Snapshot."""

    def __init__(
        self,
        sessions_dir=SESSIONS_DIR,
        registry_path=SUBAGENT_REGISTRY,
        suffix: str = SESSION_SUFFIX,
        burst_window: float = BURST_WINDOW,
        settle_window: float = SETTLE_WINDOW,
        sleep_window: float = SLEEP_WINDOW,
        subagent_window: float = SUBAGENT_WINDOW,
    ) -> None:
        if not 0 <= burst_window <= settle_window <= sleep_window:
            raise ValueError(
                "thresholds must satisfy 0 <= burst_window <= settle_window <= sleep_window, "
                f"got {burst_window}/{settle_window}/{sleep_window}"
            )
        self.sessions_dir = sessions_dir
        self.registry_path = registry_path
        self.suffix = suffix
        self.burst_window = burst_window
        self.settle_window = settle_window
        self.sleep_window = sleep_window
        self.subagent_window = subagent_window

    def decide(self, last_signal: Optional[float], subagents: int, now: float) -> Snapshot:
        """Pure decision step; `last_signal` None means no signal was ever seen."""
        elapsed = math.inf if last_signal is None else max(0.0, now - last_signal)
        state, message = classify(
            elapsed, subagents,
            self.burst_window, self.settle_window, self.sleep_window,
        )
        return Snapshot(
            state=state,
            message=message.lower(),
            subagents=subagents,
            last_update=datetime.fromtimestamp(now, tz=timezone.utc),
        )

    def evaluate(self, now: Optional[float] = None) -> Snapshot:
        """Read the signals and classify. Never raises for missing or unreadable inputs."""
        now = time.time() if now is None else now
        last_signal = signals.last_signal_time(self.sessions_dir, self.suffix)
        subagents = signals.active_subagent_count(self.registry_path, self.subagent_window, now)
        return self.decide(last_signal, subagents, now)

    def tick(self, previous: Optional[Snapshot], now: Optional[float] = None) -> Optional[Snapshot]:
        """
        Evaluate and return the new Snapshot only if its content differs from
        `previous` (the last published one). A newer timestamp alone is not a change.
        """
        snapshot = self.evaluate(now)
        if snapshot.same_content(previous):
            return None
        logger.debug(f"Activity changed: {previous.state if previous else None} -> {snapshot.state}")
        return snapshot
