"""Filesystem watcher for the local (iCloud Drive) sync folder.

Uses the watchdog library to monitor the folder for new or modified
media files, waits until each has stopped growing, then hands the
stable files to the shared batch pipeline.  The local source is only
ever deleted after the consumer acknowledges a relayed file; skipped
files are archived as copies and the original stays in place.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from watchdog.events import (
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from screen_sync.cache import FingerprintCache, fingerprint
from screen_sync.context import EngineContext
from screen_sync.errors import StartupError
from screen_sync.formats import MEDIA_EXTENSIONS, Dispatch, FileClass
from screen_sync.models import Outcome, RemoteFile
from screen_sync.modes import SyncMode
from screen_sync.watcher import BackendWatcher

logger = logging.getLogger(__name__)

_TRACKER_POLL_SECONDS = 0.5


def _is_candidate(path: str) -> bool:
    name = os.path.basename(path)
    if name.startswith("."):
        # Hidden files include iCloud ".name.icloud" placeholders
        return False
    return os.path.splitext(name)[1].lower() in MEDIA_EXTENSIONS


def local_file(path: Path) -> RemoteFile | None:
    """Describe a local file the way the pipeline expects, or None if gone."""
    try:
        stat = path.stat()
    except OSError:
        return None
    return RemoteFile(
        id=str(path),
        name=path.name,
        size=stat.st_size,
        created_time=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
    )


class StabilityTracker:
    """Tracks files until they have been stable (unchanged) for a given duration.

    Files that settle in the same pass are delivered together as one batch.
    """

    def __init__(
        self,
        stable_seconds: float,
        on_stable: Callable[[list[Path]], None],
        poll_seconds: float = _TRACKER_POLL_SECONDS,
    ):
        self._stable_seconds = stable_seconds
        self._on_stable = on_stable
        self._poll_seconds = poll_seconds
        # file_path -> (last_change_time, last_size)
        self._pending: dict[Path, tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def stable_seconds(self) -> float:
        return self._stable_seconds

    @stable_seconds.setter
    def stable_seconds(self, value: float) -> None:
        self._stable_seconds = max(0.0, value)

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._poll, daemon=True, name="StabilityTracker"
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            self._pending.clear()

    def track(self, path: Path) -> None:
        """Register or update a file for stability tracking."""
        try:
            stat = path.stat()
        except OSError:
            return
        if not path.is_file():
            return
        with self._lock:
            previous = self._pending.get(path)
            if previous is None or previous[1] != stat.st_size:
                self._pending[path] = (time.monotonic(), stat.st_size)
        logger.debug("Tracking %s (size=%d)", path, stat.st_size)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def check(self) -> list[Path]:
        """Return files that have settled, removing them from tracking."""
        stable: list[Path] = []
        now = time.monotonic()
        with self._lock:
            for path, (last_change, last_size) in list(self._pending.items()):
                try:
                    current_size = path.stat().st_size
                except OSError:
                    # File vanished
                    del self._pending[path]
                    continue
                if current_size != last_size:
                    self._pending[path] = (now, current_size)
                elif now - last_change >= self._stable_seconds:
                    stable.append(path)
            for p in stable:
                del self._pending[p]
        return stable

    def _poll(self) -> None:
        """Periodically check if tracked files have stabilised."""
        while not self._stop.is_set():
            stable = self.check()
            if stable:
                logger.info("%d file(s) stable", len(stable))
                try:
                    self._on_stable(stable)
                except Exception:
                    logger.exception("Error in on_stable callback")
            self._stop.wait(timeout=self._poll_seconds)


class NewFileHandler(FileSystemEventHandler):
    """Watchdog handler that feeds new/modified media files into the tracker."""

    def __init__(self, tracker: StabilityTracker):
        super().__init__()
        self._tracker = tracker

    def on_created(self, event: FileCreatedEvent) -> None:  # type: ignore[override]
        if not event.is_directory and _is_candidate(event.src_path):
            self._tracker.track(Path(event.src_path))

    def on_modified(self, event: FileModifiedEvent) -> None:  # type: ignore[override]
        if not event.is_directory and _is_candidate(event.src_path):
            self._tracker.track(Path(event.src_path))

    def on_moved(self, event: FileMovedEvent) -> None:  # type: ignore[override]
        # iCloud downloads land as a placeholder renamed to the real name
        if not event.is_directory and _is_candidate(event.dest_path):
            self._tracker.track(Path(event.dest_path))


class LocalFolderWatcher(BackendWatcher):
    """Watches the local sync folder with watchdog."""

    mode = SyncMode.LOCAL

    def __init__(
        self,
        ctx: EngineContext,
        observer_factory: Callable[[], Any] = Observer,
        **kwargs,
    ):
        super().__init__(ctx, **kwargs)
        self.folder = self.config.local_watch_folder
        self.fingerprints = FingerprintCache(self.config.fingerprint_ttl)
        self._observer_factory = observer_factory
        self._observer: Any | None = None
        self._tracker = StabilityTracker(self.config.stable_time, self.handle_stable)
        self._handler = NewFileHandler(self._tracker)

    @property
    def tracker(self) -> StabilityTracker:
        return self._tracker

    # ---- backend hooks ----

    def prepare(self) -> None:
        try:
            self.folder.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StartupError(
                f"Cannot create sync folder {self.folder}: {exc}. "
                "Check that iCloud Drive is enabled."
            ) from exc
        if not self.folder.is_dir():
            raise StartupError(f"Sync folder {self.folder} is not a directory")
        logger.info("Local sync folder: %s", self.folder)

    def fetch(self, file: RemoteFile) -> bytes:
        return Path(file.id).read_bytes()

    def delete_source(self, file: RemoteFile) -> None:
        Path(file.id).unlink(missing_ok=True)

    def keeps_source(self, file: RemoteFile, dispatch: Dispatch) -> bool:
        return (
            dispatch.file_class is FileClass.ANIMATION
            and self.config.keep_animations_in_source
        )

    def dedup_key(self, file: RemoteFile) -> str:
        mtime = file.created_time.timestamp() if file.created_time else 0.0
        return fingerprint(file.id, file.size, mtime)

    def list_for_manual_sync(self) -> list[RemoteFile]:
        files = []
        for path in sorted(self.folder.iterdir()):
            if path.is_file() and _is_candidate(str(path)):
                described = local_file(path)
                if described is not None:
                    files.append(described)
        return files

    def maintain(self) -> None:
        super().maintain()
        dropped = self.fingerprints.sweep()
        if dropped:
            logger.debug("Dropped %d expired fingerprint(s)", dropped)

    # ---- discovery ----

    def start_discovery(self) -> None:
        observer = self._observer_factory()
        observer.schedule(self._handler, str(self.folder), recursive=False)
        observer.start()
        self._observer = observer
        self._tracker.start()
        if self.config.process_existing:
            for file in self.list_for_manual_sync():
                self._tracker.track(Path(file.id))
        logger.info(
            "Watching '%s' (stable=%.1fs)", self.folder, self._tracker.stable_seconds
        )

    def stop_discovery(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        self._tracker.stop()

    def handle_stable(self, paths: list[Path]) -> None:
        """Process files the stability tracker reports as settled."""
        fresh = []
        for path in paths:
            file = local_file(path)
            if file is None:
                continue
            key = self.dedup_key(file)
            if self.fingerprints.seen_recently(key):
                logger.debug("Duplicate event for %s ignored", file.name)
                continue
            if not self.ctx.known.claim(key):
                continue
            fresh.append(file)
        if not fresh:
            return
        report = self.process_batch(fresh)
        for result in report.results:
            if result.outcome is Outcome.FAILED:
                # Let the next event for this version through again
                self.fingerprints.forget(self.dedup_key(result.file))
