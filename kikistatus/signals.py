"""
Filesystem activity signals.

The watcher never writes here; it only looks at modification times of the
agent's session transcripts and at the `updatedAt` stamps in the session
registry. Every read failure means "no signal".
"""
import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from kikistatus.config import SESSION_SUFFIX, SUBAGENT_WINDOW

logger = logging.getLogger(__name__)

SUBAGENT_KEY_MARKER = ":subagent:"


def last_signal_time(directory, suffix: str = SESSION_SUFFIX) -> Optional[float]:
    """Return the newest mtime (epoch seconds) among files ending in `suffix`, or None."""
    newest = None
    try:
        with os.scandir(directory) as it:
            for entry in it:
                if not entry.name.endswith(suffix):
                    continue
                try:
                    mtime = entry.stat().st_mtime
                except OSError as e:
                    logger.debug(f"Skipping unreadable session file {entry.path}: {e}")
                    continue
                if newest is None or mtime > newest:
                    newest = mtime
    except OSError as e:
        logger.debug(f"Sessions directory unavailable ({directory}): {e}")
        return None
    return newest


def _updated_at_seconds(value: Any) -> Optional[float]:
    """Registry stamps come as epoch milliseconds, epoch seconds or ISO-8601 strings."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Anything past ~2001-09 in milliseconds is > 1e12
        return value / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    return None


def active_subagent_count(registry_path, window: float = SUBAGENT_WINDOW,
                          now: Optional[float] = None) -> int:
    """Count subagent sessions in the registry updated within the trailing `window` seconds."""
    now = time.time() if now is None else now
    try:
        registry = json.loads(Path(registry_path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.debug(f"Subagent registry unavailable ({registry_path}): {e}")
        return 0
    if not isinstance(registry, dict):
        return 0

    count = 0
    for key, entry in registry.items():
        if SUBAGENT_KEY_MARKER not in str(key) or not isinstance(entry, dict):
            continue
        updated = _updated_at_seconds(entry.get("updatedAt"))
        if updated is not None and now - updated <= window:
            count += 1
    return count
