"""Plain data types passed between the watcher, the dispatcher and the relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


@dataclass(frozen=True)
class RemoteFile:
    """A file as listed by a storage backend.

    ``id`` is the backend's opaque key (a Drive file id, an OSS object
    name, or an absolute path for the local folder watcher).
    """

    id: str
    name: str
    mime_type: str = ""
    size: int = 0
    created_time: datetime | None = None

    @property
    def extension(self) -> str:
        """Return the lower-case extension including the dot, or ``""``."""
        return PurePosixPath(self.name).suffix.lower()

    @property
    def sort_key(self) -> datetime:
        """Creation time used to order a batch (unknown times sort first)."""
        return self.created_time or _EPOCH


@dataclass
class ListPage:
    """One page of a folder listing."""

    files: list[RemoteFile] = field(default_factory=list)
    next_page_token: str | None = None


class Outcome(Enum):
    """Result of processing one discovered file."""

    RELAYED = "relayed"  # sent as a screenshot message
    ARCHIVED = "archived"  # video / too-large: saved to the overflow folder
    UNCONVERTIBLE = "unconvertible"  # skipped, source kept, reason logged
    FAILED = "failed"  # error or timeout; left for retry


@dataclass
class FileResult:
    """Outcome of one file within a batch."""

    file: RemoteFile
    outcome: Outcome
    error: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.RELAYED


@dataclass
class BatchReport:
    """Aggregated results of a discovery cycle or a manual sync."""

    results: list[FileResult] = field(default_factory=list)
    timed_out: bool = False

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def errors(self) -> list[dict[str, str]]:
        """Per-file error entries in the ``manual-sync-complete`` wire shape."""
        return [
            {"filename": r.file.name, "error": r.error}
            for r in self.results
            if r.outcome in (Outcome.FAILED, Outcome.UNCONVERTIBLE)
        ]
