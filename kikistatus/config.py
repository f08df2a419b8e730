"""
KikiStatus Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# Data directory: the checkout's data/ when running from source, else per-user
_repo_data_dir = BASE_DIR / "data"
_user_data_dir = Path.home() / ".kikistatus"


def resolve_data_dir(override=None, repo_dir: Path = _repo_data_dir, user_dir: Path = _user_data_dir) -> Path:
    if override:
        return Path(override)
    if repo_dir.exists():
        return repo_dir
    # Installed package mode normally runs outside repository checkout.
    return user_dir


DATA_DIR = resolve_data_dir(os.getenv("KIKI_DATA_DIR"))

CONFIG_FILE = DATA_DIR / "config.json"

config_data = {}
if CONFIG_FILE.exists():
    try:
        with open(CONFIG_FILE, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except Exception:
        pass


def _setting(env: str, key: str, default):
    return os.getenv(env, config_data.get(key, default))


def _enabled(env: str, key: str, default: str) -> bool:
    return str(_setting(env, key, default)).lower() in {"1", "true", "yes"}


# HTTP server - default to localhost only
HOST = _setting("KIKI_HOST", "HOST", "127.0.0.1")
PORT = int(_setting("KIKI_PORT", "PORT", "3847"))

# Activity signals: the agent's session transcripts and its session registry
SESSIONS_DIR = _setting("KIKI_SESSIONS_DIR", "SESSIONS_DIR",
                        str(Path.home() / ".clawdbot" / "agents" / "main" / "sessions"))
SESSION_SUFFIX = _setting("KIKI_SESSION_SUFFIX", "SESSION_SUFFIX", ".jsonl")
SUBAGENT_REGISTRY = _setting("KIKI_SUBAGENT_REGISTRY", "SUBAGENT_REGISTRY",
                             str(Path(SESSIONS_DIR) / "sessions.json"))
# A subagent counts as active if its registry entry was updated within this many seconds
SUBAGENT_WINDOW = float(_setting("KIKI_SUBAGENT_WINDOW", "SUBAGENT_WINDOW", "300"))

# The single persisted snapshot (overwritten on every change). Kept apart from
# config.json; only this one file is published under /static.
STATUS_FILE = _setting("KIKI_STATUS_FILE", "STATUS_FILE", str(DATA_DIR / "public" / "status.json"))

# Classifier thresholds (seconds since the last signal)
BURST_WINDOW = float(_setting("KIKI_BURST_WINDOW", "BURST_WINDOW", "10"))
SETTLE_WINDOW = float(_setting("KIKI_SETTLE_WINDOW", "SETTLE_WINDOW", "60"))
SLEEP_WINDOW = float(_setting("KIKI_SLEEP_WINDOW", "SLEEP_WINDOW", "900"))
WATCH_INTERVAL = float(_setting("KIKI_WATCH_INTERVAL", "WATCH_INTERVAL", "5"))

# Downstream distribution hooks (both optional)
PUBLISH_COMMAND = _setting("KIKI_PUBLISH_COMMAND", "PUBLISH_COMMAND", "")
HOOK_TIMEOUT = float(_setting("KIKI_HOOK_TIMEOUT", "HOOK_TIMEOUT", "30"))
GIST_ID = _setting("KIKI_GIST_ID", "GIST_ID", "")
GITHUB_TOKEN = os.getenv("KIKI_GITHUB_TOKEN", "")

# Run the watcher loop inside the status server process
WATCHER_ENABLED = _enabled("KIKI_WATCHER", "WATCHER_ENABLED", "true")

# Viewer sources, fastest first. An empty MIRROR_URL drops the remote mirror.
LOCAL_URL = _setting("KIKI_LOCAL_URL", "LOCAL_URL", f"http://127.0.0.1:{PORT}/status")
# The default static fallback is served by the same process as LOCAL_URL, so it
# only helps while /status itself is failing. Point KIKI_STATIC_URL at a copy
# hosted elsewhere (e.g. a web server or Pages site) to survive a server outage.
STATIC_URL = _setting("KIKI_STATIC_URL", "STATIC_URL", f"http://127.0.0.1:{PORT}/static/status.json")
MIRROR_URL = _setting("KIKI_MIRROR_URL", "MIRROR_URL", "")
LOCAL_TIMEOUT = float(_setting("KIKI_LOCAL_TIMEOUT", "LOCAL_TIMEOUT", "0.8"))
STATIC_TIMEOUT = float(_setting("KIKI_STATIC_TIMEOUT", "STATIC_TIMEOUT", "2"))
MIRROR_TIMEOUT = float(_setting("KIKI_MIRROR_TIMEOUT", "MIRROR_TIMEOUT", "4"))
# Once the local server is found down, skip it for this many seconds
LOCAL_COOLDOWN = float(_setting("KIKI_LOCAL_COOLDOWN", "LOCAL_COOLDOWN", "30"))
# The mirror sits behind a CDN; contact it at most this often
MIRROR_MIN_INTERVAL = float(_setting("KIKI_MIRROR_MIN_INTERVAL", "MIRROR_MIN_INTERVAL", "30"))
POLL_INTERVAL = float(_setting("KIKI_POLL_INTERVAL", "POLL_INTERVAL", "2"))
# Snapshots older than this are not shown as current activity
FRESHNESS_WINDOW = float(_setting("KIKI_FRESHNESS_WINDOW", "FRESHNESS_WINDOW", "120"))
# Optional bearer credential sent unchanged to every source
SOURCE_TOKEN = os.getenv("KIKI_SOURCE_TOKEN", "")


# Keys that may be persisted to config.json, with the type each is read back as
SETTABLE_KEYS = {
    "HOST": str,
    "PORT": int,
    "SESSIONS_DIR": str,
    "SUBAGENT_REGISTRY": str,
    "SUBAGENT_WINDOW": float,
    "STATUS_FILE": str,
    "BURST_WINDOW": float,
    "SETTLE_WINDOW": float,
    "SLEEP_WINDOW": float,
    "WATCH_INTERVAL": float,
    "PUBLISH_COMMAND": str,
    "GIST_ID": str,
    "WATCHER_ENABLED": bool,
    "LOCAL_URL": str,
    "STATIC_URL": str,
    "MIRROR_URL": str,
    "POLL_INTERVAL": float,
    "FRESHNESS_WINDOW": float,
}


def get_config_dict():
    """Effective settings of this process (secrets excluded)."""
    values = globals()
    config = {key: values[key] for key in SETTABLE_KEYS}
    config["DATA_DIR"] = str(DATA_DIR)
    return config


def parse_setting(key: str, raw: str):
    """Convert a `KEY=VALUE` string value to the type stored for `key`."""
    if key not in SETTABLE_KEYS:
        raise ValueError(f"unknown setting {key!r}")
    kind = SETTABLE_KEYS[key]
    if kind is bool:
        return raw.lower() in {"1", "true", "yes"}
    return kind(raw)


def save_config_dict(new_data: dict, config_file=None) -> dict:
    """Merge `new_data` into config.json and return the merged file contents."""
    config_file = Path(config_file) if config_file else CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
    return current
