"""Entry point for ScreenSync.

Usage:
    python -m screen_sync [run]          Supervise the relay server and watcher
    python -m screen_sync relay          Run only the relay server
    python -m screen_sync watch --mode M Run one watcher (drive, oss or icloud)
    python -m screen_sync mode [M]       Print or change the active sync mode
"""

import argparse
import sys

from screen_sync import __version__
from screen_sync.errors import EXIT_CONFIG_ERROR, EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="screen-sync",
        description="Relay new screenshots from cloud storage to a consumer app.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="path to config.json (default: app data dir)")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="supervise the relay server and the active watcher")
    sub.add_parser("relay", help="run the relay server")
    watch = sub.add_parser("watch", help="run a single watcher process")
    watch.add_argument("--mode", required=True, help="drive, oss or icloud")
    mode = sub.add_parser("mode", help="print or set the active sync mode")
    mode.add_argument("value", nargs="?", help="new mode (drive, oss or icloud)")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse the command line and dispatch to the matching runner."""
    args = _build_parser().parse_args(argv)

    from screen_sync import runtime
    from screen_sync.config import Config
    from screen_sync.modes import SyncMode

    config = Config(args.config) if args.config else Config()
    command = args.command or "run"

    if command == "relay":
        return runtime.run_relay(config)

    if command == "watch":
        mode = SyncMode.parse(args.mode)
        if mode is None:
            print(f"Unknown mode: {args.mode}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        return runtime.run_watcher(config, mode)

    if command == "mode":
        record = runtime.mode_record_for(config)
        if args.value is None:
            print(record.read().value)
            return EXIT_OK
        mode = SyncMode.parse(args.value)
        if mode is None:
            print(f"Unknown mode: {args.value}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        record.write(mode)
        print(f"Sync mode set to {mode.label}")
        return EXIT_OK

    return runtime.run_supervisor(config)


if __name__ == "__main__":
    sys.exit(main())
