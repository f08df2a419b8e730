import argparse
import asyncio
import json
import logging

import uvicorn

from kikistatus import config
from kikistatus.config import HOST, PORT, POLL_INTERVAL, STATUS_FILE, WATCH_INTERVAL

logger = logging.getLogger("kikistatus")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def log_status(state: str, message: str, subagents: int, connected: bool) -> None:
    """Terminal render boundary: one log line per visible change."""
    link = "online" if connected else "offline"
    helpers = f" [{subagents} helper{'s' if subagents != 1 else ''}]" if subagents else ""
    logger.info(f"[{link}] {state}{helpers} {message}".rstrip())


def serve(args) -> None:
    uvicorn.run(
        "kikistatus.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        timeout_graceful_shutdown=3,
    )


async def _watch(args) -> None:
    from kikistatus.classifier import ActivityClassifier
    from kikistatus.hooks import build_hooks
    from kikistatus.publisher import SnapshotPublisher
    from kikistatus.watcher import StatusWatcher

    watcher = StatusWatcher(
        ActivityClassifier(),
        SnapshotPublisher(args.status_file, build_hooks()),
        interval=args.interval,
    )
    await watcher.run()


async def _view(args) -> None:
    from kikistatus.client import StatusPoller, build_sources

    poller = StatusPoller(build_sources(), log_status, interval=args.interval)
    await poller.run()


def show_or_set_config(args) -> int:
    """Print the effective settings, or persist `KEY=VALUE` overrides to config.json."""
    if not args.set:
        print(json.dumps(config.get_config_dict(), indent=2))
        return 0

    updates = {}
    for item in args.set:
        key, sep, raw = item.partition("=")
        try:
            if not sep:
                raise ValueError(f"expected KEY=VALUE, got {item!r}")
            updates[key.strip().upper()] = config.parse_setting(key.strip().upper(), raw)
        except ValueError as e:
            logger.error(f"Invalid setting: {e}")
            return 2
    config.save_config_dict(updates)
    logger.info(f"Saved {', '.join(sorted(updates))} to {config.CONFIG_FILE}; restart to apply")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="KikiStatus activity status feed")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Run the HTTP status server")
    p_serve.add_argument("--host", default=HOST, help="Bind host")
    p_serve.add_argument("--port", type=int, default=PORT, help="Bind port")
    p_serve.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )

    p_watch = sub.add_parser("watch", help="Run only the activity watcher")
    p_watch.add_argument("--status-file", default=STATUS_FILE, help="Where to persist the snapshot")
    p_watch.add_argument("--interval", type=float, default=WATCH_INTERVAL, help="Seconds between ticks")

    p_view = sub.add_parser(
        "view",
        help="Follow the status feed in the terminal",
        description="Poll the ranked status sources and log every visible change. "
                    "By default the static fallback (KIKI_STATIC_URL) is served by the same "
                    "server as /status, so it does not help when that server is down; "
                    "point it at a separately hosted copy for that.",
    )
    p_view.add_argument("--interval", type=float, default=POLL_INTERVAL, help="Seconds between polls")

    p_config = sub.add_parser("config", help="Show settings, or save overrides to config.json")
    p_config.add_argument("--set", action="append", metavar="KEY=VALUE", help="Setting to persist (repeatable)")

    args = parser.parse_args()
    _setup_logging(args.verbose)

    if args.command == "config":
        raise SystemExit(show_or_set_config(args))
    if args.command == "watch":
        runner = _watch
    elif args.command == "view":
        runner = _view
    else:
        if args.command is None:
            args = parser.parse_args(["serve"])
        serve(args)
        return

    try:
        asyncio.run(runner(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
