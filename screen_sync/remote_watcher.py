"""
Poll-based watchers for remote storage backends.

Two discovery styles exist.  :class:`IncrementalWatcher` asks the backend
only for files created after a moving cursor (Drive-style).
:class:`FullListingWatcher` pages through the whole folder each cycle
and diffs against the known set (OSS-style).
"""

from __future__ import annotations

import logging
import threading
from abc import abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta, timezone

from screen_sync.config import Config
from screen_sync.context import EngineContext
from screen_sync.errors import RemoteNotFoundError, StartupError, StorageError
from screen_sync.formats import is_media
from screen_sync.models import BatchReport, RemoteFile
from screen_sync.modes import SyncMode
from screen_sync.platform_utils import get_user_folder_name
from screen_sync.storage import RemoteStorageClient
from screen_sync.watcher import BackendWatcher

logger = logging.getLogger(__name__)

_PAGE_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def establish_user_folder(
    client: RemoteStorageClient, config: Config, mode: SyncMode
) -> str:
    """Return the per-user working folder id, provisioning it if needed.

    A persisted reference is validated with a one-item listing.  Otherwise
    ``<prefix>-<user>@<host>`` is created (or found) under the configured
    root and remembered.  Never falls back to watching the root itself.
    """
    ref = config.folder_ref(mode)
    if ref:
        try:
            client.list_folder(ref, page_size=1)
            logger.info("Using working folder %s", ref)
            return ref
        except RemoteNotFoundError:
            logger.warning("Saved working folder %s no longer exists; recreating", ref)
        except StorageError as exc:
            logger.warning("Could not validate working folder %s (%s)", ref, exc)

    root = config.root_folder(mode)
    if not root:
        raise StartupError(
            f"No root folder configured for {mode.label}. "
            f"Set the root folder in {config.path}."
        )

    name = get_user_folder_name(config.user_folder_prefix)
    try:
        folder_id = client.create_folder(name, root)
    except StorageError as exc:
        raise StartupError(
            f"Could not create working folder {name!r} under {root!r}: {exc}. "
            "Check that the root folder exists and the credentials may write to it."
        ) from exc
    if not folder_id:
        raise StartupError(f"Backend returned no id for working folder {name!r}")

    config.set_folder_ref(mode, folder_id)
    config.save()
    logger.info("Working folder %s ready (%s)", name, folder_id)
    return folder_id


class RemoteWatcher(BackendWatcher):
    """Common polling loop and source operations for remote backends."""

    def __init__(
        self,
        ctx: EngineContext,
        client: RemoteStorageClient,
        now: Callable[[], datetime] = _utcnow,
        **kwargs,
    ):
        super().__init__(ctx, **kwargs)
        self.mode = ctx.mode
        self.client = client
        self._now = now
        self.folder_id: str | None = None
        self.session_start: datetime | None = None
        self._poll_stop = threading.Event()
        self._poll_thread: threading.Thread | None = None
        self._poll_lock = threading.Lock()

    # ---- backend hooks ----

    def prepare(self) -> None:
        self.folder_id = establish_user_folder(self.client, self.config, self.mode)

    def fetch(self, file: RemoteFile) -> bytes:
        return self.client.download(file.id)

    def delete_source(self, file: RemoteFile) -> None:
        try:
            self.client.delete(file.id)
        except RemoteNotFoundError:
            logger.info("%s was already gone from %s", file.name, self.mode.label)

    def after_archive(self, file: RemoteFile) -> None:
        try:
            self.delete_source(file)
        except StorageError as exc:
            logger.error("Archived %s but could not delete it remotely: %s", file.name, exc)

    def list_for_manual_sync(self) -> list[RemoteFile]:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="list")
        future = pool.submit(self.list_all)
        try:
            files = future.result(timeout=self.config.list_timeout)
        except FutureTimeout as exc:
            raise StorageError(
                f"Listing timed out after {self.config.list_timeout:.0f}s"
            ) from exc
        finally:
            pool.shutdown(wait=False)
        return [f for f in files if is_media(f)]

    # ---- discovery ----

    def start_discovery(self) -> None:
        if self.session_start is None:
            self.begin_session()
        self._poll_stop.clear()
        self._poll_thread = threading.Thread(
            target=self._poll_loop, daemon=True, name=f"{self.mode.value}-poll"
        )
        self._poll_thread.start()

    def stop_discovery(self) -> None:
        # The loop exits after the current cycle; in-flight files finish
        self._poll_stop.set()
        self._poll_thread = None

    def _poll_loop(self) -> None:
        interval = self.config.poll_interval(self.mode)
        logger.info("Polling %s every %.0fs", self.mode.label, interval)
        while not self._poll_stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Poll cycle failed")
            if self._poll_stop.wait(timeout=interval):
                break
        logger.info("Stopped polling %s", self.mode.label)

    def list_all(self, created_after: datetime | None = None) -> list[RemoteFile]:
        """Page through the working folder."""
        if self.folder_id is None:
            raise StorageError("working folder not initialised")
        files: list[RemoteFile] = []
        token = None
        while True:
            page = self.client.list_folder(
                self.folder_id,
                created_after=created_after,
                page_token=token,
                page_size=_PAGE_SIZE,
            )
            files.extend(page.files)
            token = page.next_page_token
            if not token:
                return files

    def begin_session(self) -> None:
        """Start a realtime session; subclasses decide what counts as existing."""
        self.session_start = self._now()
        self.ctx.known.clear()

    def poll_once(self) -> BatchReport:
        """Run one discovery cycle; overlapping calls are skipped."""
        if not self._poll_lock.acquire(blocking=False):
            logger.info("Previous poll still running; skipping")
            return BatchReport()
        try:
            return self._poll()
        finally:
            self._poll_lock.release()

    @abstractmethod
    def _poll(self) -> BatchReport:
        """Run one listing-and-process cycle."""


class IncrementalWatcher(RemoteWatcher):
    """Lists only files created after a cursor (Drive-style).

    After each successful cycle the cursor moves to the cycle's start
    minus ``cursor_buffer_seconds`` so late-indexed files are still seen.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.cursor: datetime | None = None

    def begin_session(self) -> None:
        super().begin_session()
        assert self.session_start is not None
        self.cursor = self.session_start - timedelta(seconds=self.config.cursor_buffer)
        logger.info("Realtime session started at %s", self.session_start.isoformat())

    def _poll(self) -> BatchReport:
        poll_start = self._now()
        try:
            files = self.list_all(created_after=self.cursor)
        except (StorageError, OSError) as exc:
            logger.warning("Listing %s failed: %s", self.mode.label, exc)
            return BatchReport()

        fresh = []
        for file in files:
            if not is_media(file) or not self.ctx.known.claim(file.id):
                continue
            if (
                not self.config.process_existing
                and self.session_start is not None
                and file.created_time is not None
                and file.created_time < self.session_start
            ):
                # Predates the session: remember it, never relay it
                continue
            fresh.append(file)

        if fresh:
            logger.info("Found %d new file(s) in %s", len(fresh), self.mode.label)
        report = self.process_batch(fresh)
        self.cursor = poll_start - timedelta(seconds=self.config.cursor_buffer)
        return report


class FullListingWatcher(RemoteWatcher):
    """Pages through the whole folder each cycle (OSS-style)."""

    def begin_session(self) -> None:
        super().begin_session()
        if self.config.process_existing:
            return
        try:
            existing = self.list_all()
        except (StorageError, OSError) as exc:
            logger.warning("Could not seed known files: %s", exc)
            return
        self.ctx.known.update(f.id for f in existing)
        logger.info("Ignoring %d file(s) already in the folder", len(existing))

    def _poll(self) -> BatchReport:
        try:
            files = self.list_all()
        except (StorageError, OSError) as exc:
            logger.warning("Listing %s failed: %s", self.mode.label, exc)
            return BatchReport()
        fresh = [f for f in files if is_media(f) and self.ctx.known.claim(f.id)]
        if fresh:
            logger.info("Found %d new file(s) in %s", len(fresh), self.mode.label)
        return self.process_batch(fresh)


WATCHER_TYPES: dict[SyncMode, type[RemoteWatcher]] = {
    SyncMode.DRIVE: IncrementalWatcher,
    SyncMode.OSS: FullListingWatcher,
}
