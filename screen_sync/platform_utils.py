"""
Cross-platform utilities for ScreenSync.

Centralises all OS-detection logic so every other module can import
a single canonical set of helpers rather than scattering ``sys.platform``
checks throughout the codebase.

Supported platforms:
  - macOS 12+ (all three backends, HEIC conversion via ``sips``)
  - Windows 10/11 and Linux (remote backends; HEIC files are skipped)
"""

from __future__ import annotations

import getpass
import logging
import os
import shutil
import socket
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

# ---- platform flags ----------------------------------------------------

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"
IS_LINUX: bool = sys.platform.startswith("linux")

_APP_DIR_NAME = "ScreenSync"

# ---- directories -------------------------------------------------------


def get_config_dir() -> Path:
    """
    Return the application config directory, created if needed.

    - Windows : ``%APPDATA%\\ScreenSync``
    - macOS   : ``~/Library/Application Support/ScreenSync``
    - Linux   : ``$XDG_CONFIG_HOME/ScreenSync`` (default ``~/.config``)

    ``SCREEN_SYNC_HOME`` overrides all of the above.
    """
    override = os.environ.get("SCREEN_SYNC_HOME")
    if override:
        config_dir = Path(override)
    else:
        if IS_WINDOWS:
            base = os.environ.get("APPDATA", str(Path.home()))
        elif IS_MACOS:
            base = str(Path.home() / "Library" / "Application Support")
        else:
            base = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))
        config_dir = Path(base) / _APP_DIR_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_log_path(role: str = "screen_sync") -> Path:
    """Return the log file for a process *role* (inside the config directory)."""
    return get_config_dir() / f"{role}.log"


def get_mode_record_path() -> Path:
    """Return the path of the shared mode record."""
    return get_config_dir() / "sync-mode"


def get_default_overflow_dir() -> Path:
    """Folder for files that cannot be relayed (videos, oversized animations)."""
    return Path.home() / "ScreenSyncImg"


def get_default_local_watch_dir() -> Path:
    """Folder watched in local mode: the iCloud Drive sync folder on macOS."""
    if IS_MACOS:
        return (
            Path.home()
            / "Library"
            / "Mobile Documents"
            / "com~apple~CloudDocs"
            / "ScreenSyncImg"
        )
    return Path.home() / "ScreenSyncInbox"


# ---- identity ----------------------------------------------------------


def get_user_identifier() -> str:
    """Return ``user@host``, used to keep users of a shared root apart."""
    try:
        user = getpass.getuser()
    except Exception:
        user = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    return f"{user}@{socket.gethostname()}"


def get_user_folder_name(prefix: str) -> str:
    """Return the per-user working folder name, e.g. ``ScreenSync-ann@mbp``."""
    return f"{prefix}-{get_user_identifier()}"


# ---- external tools ----------------------------------------------------


def find_still_converter() -> str | None:
    """Return the path of ``sips`` on macOS, or None where it is unavailable."""
    if not IS_MACOS:
        return None
    return shutil.which("sips")
