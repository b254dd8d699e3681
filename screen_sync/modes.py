"""Sync modes and the shared on-disk mode record.

The mode record is a one-line text file holding the active backend.
The supervisor polls it, the relay server and the active watcher write
it when the consumer asks for a switch.  Writes go through a temporary
file and ``os.replace`` so readers never see a half-written value.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class SyncMode(Enum):
    """The backend a watcher runs against."""

    DRIVE = "drive"
    OSS = "oss"
    LOCAL = "icloud"

    @classmethod
    def parse(cls, value: str | None) -> SyncMode | None:
        """Return the mode named by *value* (aliases accepted) or None."""
        if not value:
            return None
        key = value.strip().lower()
        return _ALIASES.get(key)

    @property
    def label(self) -> str:
        """Human-readable backend name."""
        return _LABELS[self]

    @property
    def file_ref_key(self) -> str | None:
        """Backend-specific file reference key in screenshot messages."""
        return _FILE_REF_KEYS[self]


_ALIASES: dict[str, SyncMode] = {
    "drive": SyncMode.DRIVE,
    "google": SyncMode.DRIVE,
    "oss": SyncMode.OSS,
    "aliyun": SyncMode.OSS,
    "icloud": SyncMode.LOCAL,
    "local": SyncMode.LOCAL,
}

_LABELS = {
    SyncMode.DRIVE: "Google Drive",
    SyncMode.OSS: "Aliyun OSS",
    SyncMode.LOCAL: "iCloud folder",
}

_FILE_REF_KEYS = {
    SyncMode.DRIVE: "driveFileId",
    SyncMode.OSS: "ossFileId",
    SyncMode.LOCAL: None,
}


class ModeRecord:
    """The single shared value naming the backend that should be active."""

    def __init__(self, path: Path, default: SyncMode = SyncMode.DRIVE):
        self._path = Path(path)
        self._default = default

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> SyncMode:
        """Return the recorded mode, or the default when absent or invalid."""
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self._default
        except OSError as exc:
            logger.warning("Could not read mode record %s: %s", self._path, exc)
            return self._default
        mode = SyncMode.parse(raw)
        if mode is None:
            logger.warning("Ignoring invalid mode record value %r", raw.strip())
            return self._default
        return mode

    def write(self, mode: SyncMode) -> None:
        """Persist *mode*, replacing the previous value atomically."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(f".{self._path.name}.{os.getpid()}.tmp")
        tmp.write_text(mode.value, encoding="utf-8")
        os.replace(tmp, self._path)
        logger.info("Mode record set to %s", mode.value)

    def ensure(self) -> SyncMode:
        """Make sure the record exists and return its current value."""
        mode = self.read()
        if not self._path.exists():
            self.write(mode)
        return mode
