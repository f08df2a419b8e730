"""
Persistence for the single current snapshot.

The status file is overwritten in place (write to a sibling temp file, then
rename) so readers never observe a half-written document.
"""
import json
import logging
import os
import tempfile
from pathlib import Path

from kikistatus.models import Snapshot

logger = logging.getLogger(__name__)


class SnapshotReadError(Exception):
    """Raised when the persisted snapshot is missing or unreadable."""

    def __init__(self, path, reason: str) -> None:
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Failed to read status from {path}: {reason}")


def write_snapshot(path, snapshot: Snapshot) -> None:
    """Atomically replace the status file with `snapshot`. Raises OSError on failure."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(snapshot.to_wire(), indent=2) + "\n"

    fd, tmp_path = tempfile.mkstemp(prefix=".status-", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp_path, target)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_snapshot(path) -> Snapshot:
    """Load the persisted snapshot. Raises SnapshotReadError instead of returning partial data."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise SnapshotReadError(path, e.strerror or str(e)) from e
    try:
        return Snapshot.from_wire(json.loads(raw))
    except ValueError as e:  # bad JSON or SnapshotDecodeError
        raise SnapshotReadError(path, f"malformed status document ({e})") from e
