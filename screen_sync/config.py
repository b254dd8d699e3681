"""Configuration management for ScreenSync.

Stores and retrieves settings from a JSON config file in the
platform-appropriate application data directory.  Every process
(supervisor, relay server, watcher) loads its own ``Config`` instance;
the watcher also persists the remote folder references it provisions.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any

from screen_sync.modes import SyncMode
from screen_sync.platform_utils import (
    get_config_dir as _platform_config_dir,
)
from screen_sync.platform_utils import (
    get_default_local_watch_dir,
    get_default_overflow_dir,
)
from screen_sync.platform_utils import (
    get_log_path as _platform_log_path,
)
from screen_sync.platform_utils import (
    get_mode_record_path as _platform_mode_record_path,
)

logger = logging.getLogger(__name__)

MB = 1024 * 1024

DEFAULT_CONFIG: dict[str, Any] = {
    # ---- relay connection ----
    "relay_url": "ws://localhost:8888",
    "relay_host": "127.0.0.1",
    "relay_port": 8888,
    "connection_id": "sync-session-1",
    "reconnect_delay_seconds": 5,
    # ---- mode ----
    "default_mode": SyncMode.DRIVE.value,
    # ---- discovery ----
    "poll_interval_seconds": {"drive": 2, "oss": 5},
    "process_existing": False,
    "cursor_buffer_seconds": 60,
    "stable_time_seconds": 2,
    "fingerprint_ttl_seconds": 30,
    "max_known_files": 10_000,
    "cache_cleanup_interval_seconds": 300,
    # ---- conversion ----
    "max_width": 1920,
    "jpeg_quality": 85,
    "max_animation_bytes": 100 * MB,
    # ---- delivery ----
    "auto_delete": True,
    "confirm_timeout_seconds": {"drive": 120, "oss": 90, "icloud": 30},
    "large_payload_bytes": 10 * MB,
    "large_payload_timeout_seconds": 120,
    # ---- concurrency / timeouts ----
    "concurrency_limit": 3,
    "file_timeout_seconds": 60,
    "batch_timeout_seconds": 180,
    "manual_sync_timeout_seconds": 300,
    "list_timeout_seconds": 40,
    # ---- folders ----
    "user_folder_prefix": "ScreenSync",
    "drive_root_folder_id": "",
    "oss_root_folder": "ScreenSync",
    "drive_folder_id": None,  # persisted after provisioning
    "oss_folder_id": None,  # persisted after provisioning
    "overflow_folder": "",  # blank = ~/ScreenSyncImg
    "local_watch_folder": "",  # blank = iCloud Drive/ScreenSyncImg
    # ---- animation handling ----
    "backup_animations": False,
    "keep_animations_in_source": False,
    # ---- storage client factories ("package.module:callable") ----
    "storage_clients": {"drive": "", "oss": ""},
    # ---- supervisor ----
    "watcher_start_delay_seconds": 2,
    "watcher_restart_delay_seconds": 2,
    "mode_switch_delay_seconds": 1,
    "mode_poll_seconds": 3,
    "config_error_max_backoff_seconds": 60,
    "relay_max_restarts": 3,
    "stop_grace_seconds": 5,
    # ---- logging ----
    "log_level": "INFO",
    "max_log_size_mb": 10,
    "log_backup_count": 3,
}

_FOLDER_REF_KEYS = {
    SyncMode.DRIVE: "drive_folder_id",
    SyncMode.OSS: "oss_folder_id",
}

_ROOT_FOLDER_KEYS = {
    SyncMode.DRIVE: "drive_root_folder_id",
    SyncMode.OSS: "oss_root_folder",
}


def get_config_dir() -> Path:
    """Return the platform-appropriate application config directory."""
    return _platform_config_dir()


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.json"


def get_log_path(role: str) -> Path:
    """Return the path to the log file for a process role."""
    return _platform_log_path(role)


def get_mode_record_path() -> Path:
    """Return the path to the shared mode record."""
    return _platform_mode_record_path()


class Config:
    """Thread-safe configuration manager backed by a JSON file."""

    def __init__(self, path: Path | None = None):
        """Load config from *path*, falling back to the platform default."""
        self._path = Path(path) if path else get_config_path()
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self._lock = threading.Lock()
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    # ---- persistence ----

    def load(self) -> None:
        """Load configuration from disk, applying defaults for missing keys."""
        if self._path.exists():
            try:
                with open(self._path, encoding="utf-8") as fh:
                    stored = json.load(fh)
                # Merge stored values over defaults so new keys get defaults
                self._data = {**DEFAULT_CONFIG, **stored}
                logger.info("Configuration loaded from %s", self._path)
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Could not read config (%s); using defaults.", exc)
                self._data = dict(DEFAULT_CONFIG)
        else:
            self._data = dict(DEFAULT_CONFIG)
            self.save()
            logger.info("Created default configuration at %s", self._path)

    def save(self) -> None:
        """Persist the current configuration to disk."""
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._path, "w", encoding="utf-8") as fh:
                    json.dump(self._data, fh, indent=2)
                logger.info("Configuration saved.")
            except OSError as exc:
                logger.error("Failed to save configuration: %s", exc)

    def _per_mode(self, key: str, mode: SyncMode, fallback: float) -> float:
        value = self._data.get(key) or {}
        if isinstance(value, dict):
            return float(value.get(mode.value, fallback))
        return float(value)

    # ---- relay connection ----

    @property
    def relay_url(self) -> str:
        """Return the relay server WebSocket URL."""
        return self._data["relay_url"]

    @property
    def relay_host(self) -> str:
        """Return the interface the relay server binds to."""
        return self._data["relay_host"]

    @property
    def relay_port(self) -> int:
        """Return the relay server port."""
        return int(self._data["relay_port"])

    @property
    def connection_id(self) -> str:
        """Return the session id pairing a watcher with its consumer."""
        return self._data["connection_id"]

    @property
    def reconnect_delay(self) -> float:
        """Return seconds to wait before reconnecting to the relay."""
        return float(self._data["reconnect_delay_seconds"])

    # ---- mode ----

    @property
    def default_mode(self) -> SyncMode:
        """Return the mode used when no mode record exists."""
        return SyncMode.parse(self._data.get("default_mode")) or SyncMode.DRIVE

    # ---- discovery ----

    def poll_interval(self, mode: SyncMode) -> float:
        """Return the poll interval in seconds for a remote backend (minimum 1 s)."""
        return max(1.0, self._per_mode("poll_interval_seconds", mode, 5))

    @property
    def process_existing(self) -> bool:
        """Return whether files already present at session start are relayed."""
        return bool(self._data["process_existing"])

    @process_existing.setter
    def process_existing(self, value: bool) -> None:
        self._data["process_existing"] = bool(value)

    @property
    def cursor_buffer(self) -> float:
        """Return the safety buffer subtracted from the incremental cursor."""
        return float(self._data["cursor_buffer_seconds"])

    @property
    def stable_time(self) -> float:
        """Return the write-stability threshold for local files in seconds."""
        return float(self._data["stable_time_seconds"])

    @stable_time.setter
    def stable_time(self, value: float) -> None:
        """Set the stability threshold (minimum 0 s)."""
        self._data["stable_time_seconds"] = max(0.0, float(value))

    @property
    def fingerprint_ttl(self) -> float:
        """Return how long a local fingerprint suppresses duplicate events."""
        return float(self._data["fingerprint_ttl_seconds"])

    @property
    def max_known_files(self) -> int:
        """Return the bound of the known-file set (minimum 2)."""
        return max(2, int(self._data["max_known_files"]))

    @max_known_files.setter
    def max_known_files(self, value: int) -> None:
        self._data["max_known_files"] = max(2, int(value))

    @property
    def cache_cleanup_interval(self) -> float:
        """Return seconds between periodic cache maintenance passes."""
        return float(self._data["cache_cleanup_interval_seconds"])

    # ---- conversion ----

    @property
    def max_width(self) -> int:
        """Return the maximum relayed image width in pixels."""
        return int(self._data["max_width"])

    @max_width.setter
    def max_width(self, value: int) -> None:
        self._data["max_width"] = max(16, int(value))

    @property
    def jpeg_quality(self) -> int:
        """Return the JPEG quality used for recompression (1-95)."""
        return int(self._data["jpeg_quality"])

    @jpeg_quality.setter
    def jpeg_quality(self, value: int) -> None:
        self._data["jpeg_quality"] = min(95, max(1, int(value)))

    @property
    def max_animation_bytes(self) -> int:
        """Return the size above which animations are archived, not relayed."""
        return int(self._data["max_animation_bytes"])

    @max_animation_bytes.setter
    def max_animation_bytes(self, value: int) -> None:
        self._data["max_animation_bytes"] = max(0, int(value))

    # ---- delivery ----

    @property
    def auto_delete(self) -> bool:
        """Return whether sources are deleted after a confirmed relay."""
        return bool(self._data["auto_delete"])

    @auto_delete.setter
    def auto_delete(self, value: bool) -> None:
        self._data["auto_delete"] = bool(value)

    def confirm_timeout(self, mode: SyncMode, payload_size: int = 0) -> float:
        """Return how long to wait for an ack before keeping the file."""
        timeout = self._per_mode("confirm_timeout_seconds", mode, 120)
        if payload_size >= int(self._data["large_payload_bytes"]):
            timeout = max(timeout, float(self._data["large_payload_timeout_seconds"]))
        return timeout

    # ---- concurrency / timeouts ----

    @property
    def concurrency_limit(self) -> int:
        """Return the number of files processed in parallel (minimum 1)."""
        return max(1, int(self._data["concurrency_limit"]))

    @concurrency_limit.setter
    def concurrency_limit(self, value: int) -> None:
        self._data["concurrency_limit"] = max(1, int(value))

    @property
    def file_timeout(self) -> float:
        """Return the per-file processing timeout in seconds."""
        return float(self._data["file_timeout_seconds"])

    @property
    def batch_timeout(self) -> float:
        """Return the overall timeout of one discovery batch."""
        return float(self._data["batch_timeout_seconds"])

    @property
    def manual_sync_timeout(self) -> float:
        """Return the overall timeout of a manual sync."""
        return float(self._data["manual_sync_timeout_seconds"])

    @property
    def list_timeout(self) -> float:
        """Return the timeout for a folder listing during manual sync."""
        return float(self._data["list_timeout_seconds"])

    # ---- folders ----

    @property
    def user_folder_prefix(self) -> str:
        """Return the prefix of per-user working folders."""
        return self._data["user_folder_prefix"] or "ScreenSync"

    def root_folder(self, mode: SyncMode) -> str:
        """Return the configured root under which user folders are created."""
        key = _ROOT_FOLDER_KEYS.get(mode)
        return (self._data.get(key) or "").strip() if key else ""

    def set_root_folder(self, mode: SyncMode, value: str) -> None:
        self._data[_ROOT_FOLDER_KEYS[mode]] = value.strip()

    def folder_ref(self, mode: SyncMode) -> str | None:
        """Return the persisted working-folder reference for a backend."""
        key = _FOLDER_REF_KEYS.get(mode)
        return self._data.get(key) or None if key else None

    def set_folder_ref(self, mode: SyncMode, value: str | None) -> None:
        """Remember the working-folder reference for a backend."""
        self._data[_FOLDER_REF_KEYS[mode]] = value

    @property
    def overflow_folder(self) -> Path:
        """Return the local folder receiving files that cannot be relayed."""
        custom = (self._data.get("overflow_folder") or "").strip()
        if custom:
            path = Path(custom).expanduser()
            if path.parent.exists():
                return path
            logger.warning(
                "Overflow folder parent does not exist (%s); using default.", path
            )
        return get_default_overflow_dir()

    @property
    def local_watch_folder(self) -> Path:
        """Return the folder watched in local mode."""
        custom = (self._data.get("local_watch_folder") or "").strip()
        return Path(custom).expanduser() if custom else get_default_local_watch_dir()

    # ---- animation handling ----

    @property
    def backup_animations(self) -> bool:
        """Return whether relayed animations are also copied to the overflow folder."""
        return bool(self._data["backup_animations"])

    @backup_animations.setter
    def backup_animations(self, value: bool) -> None:
        self._data["backup_animations"] = bool(value)

    @property
    def keep_animations_in_source(self) -> bool:
        """Return whether the local watcher leaves relayed animations in place."""
        return bool(self._data["keep_animations_in_source"])

    @keep_animations_in_source.setter
    def keep_animations_in_source(self, value: bool) -> None:
        self._data["keep_animations_in_source"] = bool(value)

    # ---- storage clients ----

    def storage_client_factory(self, mode: SyncMode) -> str:
        """Return the dotted ``module:callable`` path building a backend client."""
        factories = self._data.get("storage_clients") or {}
        return (factories.get(mode.value) or "").strip()

    def set_storage_client_factory(self, mode: SyncMode, value: str) -> None:
        factories = dict(self._data.get("storage_clients") or {})
        factories[mode.value] = value
        self._data["storage_clients"] = factories

    # ---- supervisor ----

    @property
    def watcher_start_delay(self) -> float:
        """Return the delay between starting the relay and the first watcher."""
        return float(self._data["watcher_start_delay_seconds"])

    @property
    def watcher_restart_delay(self) -> float:
        """Return the delay before restarting a crashed watcher."""
        return float(self._data["watcher_restart_delay_seconds"])

    @property
    def mode_switch_delay(self) -> float:
        """Return the delay before starting the watcher for a new mode."""
        return float(self._data["mode_switch_delay_seconds"])

    @property
    def mode_poll_interval(self) -> float:
        """Return how often the supervisor re-reads the mode record."""
        return max(0.5, float(self._data["mode_poll_seconds"]))

    @property
    def config_error_max_backoff(self) -> float:
        """Return the ceiling of the configuration-fault restart backoff."""
        return float(self._data["config_error_max_backoff_seconds"])

    @property
    def relay_max_restarts(self) -> int:
        """Return how often the relay server is restarted before giving up."""
        return max(0, int(self._data["relay_max_restarts"]))

    @property
    def stop_grace(self) -> float:
        """Return how long a stopped child gets before it is killed."""
        return float(self._data["stop_grace_seconds"])

    # ---- logging ----

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return self._data.get("log_level", "INFO")

    @log_level.setter
    def log_level(self, value: str) -> None:
        """Set the logging level name."""
        self._data["log_level"] = value

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return int(self._data.get("max_log_size_mb", 10))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return int(self._data.get("log_backup_count", 3))
