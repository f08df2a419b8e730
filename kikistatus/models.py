"""
Data models (dataclasses) for KikiStatus.
These are plain Python objects shared by the watcher, the status server and the viewer.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Any


IDLE = "idle"
THINKING = "thinking"
WORKING = "working"
SLEEPING = "sleeping"
DELEGATING = "delegating"
# Viewer-only: never written by the watcher
DISCONNECTED = "disconnected"

STATES = (IDLE, THINKING, WORKING, SLEEPING, DELEGATING)

# Source kinds, in the order the viewer normally ranks them
LOCAL = "local"
STATIC_FALLBACK = "staticFallback"
REMOTE_MIRROR = "remoteMirror"


class SnapshotDecodeError(ValueError):
    """Raised when a payload cannot be read as a snapshot."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class Snapshot:
    state: str                        # idle | thinking | working | sleeping | delegating
    message: str = ""                 # advisory text, lower-cased
    subagents: int = 0                # active delegated workers
    last_update: Optional[datetime] = field(default_factory=_now)

    def same_content(self, other: Optional["Snapshot"]) -> bool:
        """True when state, message and subagent count match; the timestamp is ignored."""
        if other is None:
            return False
        return (self.state, self.message, self.subagents) == (other.state, other.message, other.subagents)

    def age(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds since the snapshot was produced, or None when it carries no timestamp."""
        if self.last_update is None:
            return None
        return ((now or _now()) - self.last_update).total_seconds()

    def to_wire(self) -> dict:
        return {
            "state": self.state,
            "message": self.message,
            "subagents": self.subagents,
            "lastUpdate": self.last_update.isoformat() if self.last_update else None,
        }

    @classmethod
    def from_wire(cls, data: Any) -> "Snapshot":
        """
        Build a snapshot from the JSON wire shape.

        Missing fields take their defaults (idle, "", 0, no timestamp). An unknown
        state reads as idle and an unparseable lastUpdate reads as missing. Only a
        non-object payload or wrongly typed fields raise SnapshotDecodeError.
        """
        if not isinstance(data, dict):
            raise SnapshotDecodeError(f"expected a JSON object, got {type(data).__name__}")

        state = data.get("state") or IDLE
        message = data.get("message")
        subagents = data.get("subagents", 0)
        if not isinstance(state, str):
            raise SnapshotDecodeError("state must be a string")
        if message is None:
            message = ""
        if not isinstance(message, str):
            raise SnapshotDecodeError("message must be a string")
        if subagents is None:
            subagents = 0
        if isinstance(subagents, bool) or not isinstance(subagents, (int, float)):
            raise SnapshotDecodeError("subagents must be a number")
        if isinstance(subagents, float) and not math.isfinite(subagents):
            raise SnapshotDecodeError("subagents must be finite")

        return cls(
            state=state if state in STATES else IDLE,
            message=message,
            subagents=max(0, int(subagents)),
            last_update=_parse_dt(data.get("lastUpdate")),
        )


@dataclass(frozen=True)
class Source:
    kind: str                  # local | staticFallback | remoteMirror
    url: str
    timeout: float             # seconds, per attempt
    cooldown: float = 0.0      # skip this long after a failure (0 = never skip)
    min_interval: float = 0.0  # contact at most this often, reusing the last good snapshot in between
    cache_bust: bool = False   # append t=<epoch ms> to defeat intermediary caches
    token: Optional[str] = None  # bearer credential, passed through unchanged


@dataclass(frozen=True)
class ConnectionState:
    """Derived once per viewer tick; only `reachable` survives between ticks."""
    reachable: bool
    active_source: Optional[str]           # kind of the source that answered
    last_successful_fetch: Optional[datetime]
