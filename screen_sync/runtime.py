"""Process entry points: one watcher, the relay server, the supervisor."""

from __future__ import annotations

import logging
import signal

from screen_sync import __app_name__, __version__, protocol
from screen_sync.config import Config, get_mode_record_path
from screen_sync.context import EngineContext
from screen_sync.errors import EXIT_CONFIG_ERROR, EXIT_CRASH, EXIT_OK, StartupError
from screen_sync.local_watcher import LocalFolderWatcher
from screen_sync.logs import setup_logging
from screen_sync.modes import ModeRecord, SyncMode
from screen_sync.relay import RelayConnection
from screen_sync.remote_watcher import WATCHER_TYPES
from screen_sync.server import RelayHub
from screen_sync.storage import RemoteStorageClient, load_client
from screen_sync.supervisor import Supervisor
from screen_sync.watcher import BackendWatcher

logger = logging.getLogger(__name__)


def mode_record_for(config: Config) -> ModeRecord:
    return ModeRecord(get_mode_record_path(), default=config.default_mode)


def create_watcher(
    ctx: EngineContext, client: RemoteStorageClient | None = None
) -> BackendWatcher:
    """Build the watcher for ``ctx.mode``; remote modes need a *client*."""
    if ctx.mode is SyncMode.LOCAL:
        return LocalFolderWatcher(ctx)
    if client is None:
        client = load_client(ctx.config, ctx.mode)
    return WATCHER_TYPES[ctx.mode](ctx, client)


def run_watcher(config: Config, mode: SyncMode) -> int:
    """Run one watcher process until it stops; return its exit code."""
    setup_logging(config, "watcher")
    logger.info("%s %s watcher starting (%s)", __app_name__, __version__, mode.label)

    relay = RelayConnection(
        config.relay_url,
        config.connection_id,
        protocol.WATCHER,
        reconnect_delay=config.reconnect_delay,
    )
    ctx = EngineContext.build(mode, config, relay, mode_record_for(config))
    try:
        watcher = create_watcher(ctx)
    except StartupError as exc:
        logger.error("Cannot start %s watcher: %s", mode.label, exc)
        return EXIT_CONFIG_ERROR

    def _handler(sig, frame):
        watcher.stop(EXIT_OK)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    try:
        return watcher.run_forever()
    except StartupError as exc:
        logger.error("Cannot start %s watcher: %s", mode.label, exc)
        return EXIT_CONFIG_ERROR
    except Exception:
        logger.exception("%s watcher crashed", mode.label)
        return EXIT_CRASH


def run_relay(config: Config) -> int:
    """Run the relay server until interrupted."""
    setup_logging(config, "relay")
    hub = RelayHub(
        mode_record_for(config),
        config.local_watch_folder,
        host=config.relay_host,
        port=config.relay_port,
    )

    def _handler(sig, frame):
        hub.shutdown()

    signal.signal(signal.SIGTERM, _handler)
    try:
        hub.serve_forever()
    except KeyboardInterrupt:
        hub.shutdown()
    except OSError as exc:
        logger.error("Relay server failed: %s", exc)
        return EXIT_CRASH
    return EXIT_OK


def run_supervisor(config: Config) -> int:
    setup_logging(config, "supervisor")
    logger.info("%s %s starting.", __app_name__, __version__)
    return Supervisor(config, mode_record_for(config)).run()
