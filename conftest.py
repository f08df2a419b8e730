"""
Shared fixtures for the KikiStatus unit tests.

Configuration is read at import time, so the environment is pointed at a
throwaway data directory before any kikistatus module is imported. Nothing here
touches the real agent session directory.
"""
import json
import os
import tempfile
import time
from pathlib import Path

import pytest

TEST_DATA_DIR = Path(tempfile.mkdtemp(prefix="kiki-test-"))
os.environ["KIKI_DATA_DIR"] = str(TEST_DATA_DIR)
os.environ["KIKI_STATUS_FILE"] = str(TEST_DATA_DIR / "status.json")
os.environ["KIKI_SESSIONS_DIR"] = str(TEST_DATA_DIR / "no-sessions")
os.environ["KIKI_WATCHER"] = "0"
os.environ.pop("KIKI_PUBLISH_COMMAND", None)
os.environ.pop("KIKI_GIST_ID", None)


@pytest.fixture
def sessions_dir(tmp_path: Path) -> Path:
    d = tmp_path / "sessions"
    d.mkdir()
    return d


@pytest.fixture
def touch():
    """Create (or update) a file whose mtime lies `age` seconds before `now`."""
    def _touch(path: Path, age: float, now: float | None = None) -> Path:
        now = time.time() if now is None else now
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text('{"type": "message"}\n', encoding="utf-8")
        os.utime(path, (now - age, now - age))
        return path
    return _touch


@pytest.fixture
def write_registry():
    """Write a session registry: {key: {"updatedAt": <epoch ms>}} for each (key, age) pair."""
    def _write(path: Path, entries: dict[str, float], now: float | None = None) -> Path:
        now = time.time() if now is None else now
        data = {key: {"updatedAt": int((now - age) * 1000)} for key, age in entries.items()}
        path.write_text(json.dumps(data), encoding="utf-8")
        return path
    return _write
