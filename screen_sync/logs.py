"""Logging setup shared by the supervisor, relay server and watcher processes."""

from __future__ import annotations

import logging
import logging.handlers
import sys

from screen_sync.config import Config, get_log_path

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(config: Config, role: str) -> None:
    """Configure a rotating file log for *role* plus a stderr handler."""
    log_path = get_log_path(role)
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Re-running in the same process must not duplicate output
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    fmt = logging.Formatter(LOG_FORMAT)

    # Rotating file handler
    max_bytes = config.max_log_size_mb * 1024 * 1024
    try:
        fh = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        fh = None
        print(f"Could not open log file {log_path}: {exc}", file=sys.stderr)
    if fh is not None:
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root_logger.addHandler(fh)

    # Console handler (stderr, so stdout stays free for command output)
    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)

    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))

    logger.debug("Logging initialised for %s at %s", role, log_path)
