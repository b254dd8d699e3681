"""
Backend watcher base class.

A watcher discovers files in one backend, pushes them through the format
dispatcher and relays the result to the consumer.  Subclasses provide
discovery and source access; this module owns everything the three
backends share: the relay message handlers, the bounded worker pool with
per-file and per-batch timeouts, the per-file outcome handling, manual
sync and periodic cache maintenance.

Threads inside one watcher process:

* the relay receive thread, which runs :meth:`handle_message`;
* a discovery thread (poll loop or filesystem stability tracker);
* a ``ThreadPoolExecutor`` doing per-file work;
* a maintenance thread;
* one short-lived thread per manual sync.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any

from screen_sync import protocol
from screen_sync.context import EngineContext
from screen_sync.errors import EXIT_OK
from screen_sync.formats import Action, Dispatch, FileClass
from screen_sync.models import BatchReport, FileResult, Outcome, RemoteFile
from screen_sync.modes import SyncMode

logger = logging.getLogger(__name__)

# How often the batch loop re-checks per-file and batch deadlines
_BATCH_TICK_SECONDS = 0.25


class FileCancelled(Exception):
    """Raised inside a worker when its file was abandoned by the batch."""


class FileToken:
    """Send-or-abandon handshake between a worker and its batch.

    The worker calls :meth:`commit` right before its first side effect
    (relay send or overflow write); the batch calls :meth:`abandon` when a
    deadline passes.  Whichever comes first wins, so an abandoned file is
    never sent and a committed file is never reported as timed out.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._state: str | None = None

    @property
    def abandoned(self) -> bool:
        return self._state == "abandoned"

    @property
    def committed(self) -> bool:
        return self._state == "committed"

    def commit(self) -> bool:
        return self._claim("committed")

    def abandon(self) -> bool:
        return self._claim("abandoned")

    def _claim(self, state: str) -> bool:
        with self._lock:
            if self._state is None:
                self._state = state
            return self._state == state


class BackendWatcher(ABC):
    """Shared engine for one backend.  See the module docstring."""

    mode: SyncMode

    def __init__(self, ctx: EngineContext, clock: Callable[[], float] = time.monotonic):
        self.ctx = ctx
        self.config = ctx.config
        self._clock = clock
        self._stop = threading.Event()
        self._realtime = threading.Event()
        self._realtime_lock = threading.Lock()
        self._manual_lock = threading.Lock()
        self._exit_code = EXIT_OK
        self._maintenance: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    def prepare(self) -> None:
        """Provision whatever the backend needs; raise StartupError if impossible."""

    @abstractmethod
    def start_discovery(self) -> None:
        """Begin discovering new files (realtime on)."""

    @abstractmethod
    def stop_discovery(self) -> None:
        """Halt discovery; in-flight work and ledger timers are unaffected."""

    @abstractmethod
    def fetch(self, file: RemoteFile) -> bytes:
        """Return the content of *file*."""

    @abstractmethod
    def delete_source(self, file: RemoteFile) -> None:
        """Delete *file* from the backend after a confirmed relay."""

    @abstractmethod
    def list_for_manual_sync(self) -> list[RemoteFile]:
        """Return every media file currently in the source folder."""

    def after_archive(self, file: RemoteFile) -> None:
        """Called once a skipped file has been archived locally."""

    def keeps_source(self, file: RemoteFile, dispatch: Dispatch) -> bool:
        """Return True if a relayed file must stay in the source."""
        return False

    def dedup_key(self, file: RemoteFile) -> str:
        """Key recorded in the known-file set for *file*."""
        return file.id

    def maintain(self) -> None:
        """Periodic housekeeping; subclasses extend."""
        self.ctx.known.prune()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def realtime(self) -> bool:
        return self._realtime.is_set()

    @property
    def exit_code(self) -> int:
        return self._exit_code

    def run_forever(self) -> int:
        """Prepare, connect, and block until :meth:`stop`; return the exit code."""
        self.prepare()
        logger.info(
            "%s watcher ready; overflow folder is %s",
            self.mode.label,
            self.ctx.archive.folder,
        )
        self._start_maintenance()
        relay = self.ctx.relay
        if hasattr(relay, "bind"):
            relay.bind(
                on_message=self.handle_message,
                on_disconnect=self._on_relay_disconnect,
            )
        if hasattr(relay, "start"):
            relay.start()
        try:
            self._stop.wait()
        finally:
            self.stop_realtime()
            if hasattr(relay, "stop"):
                relay.stop()
            self._shutdown_workers()
            self.ctx.ledger.close()
        logger.info("%s watcher exiting with code %d", self.mode.label, self._exit_code)
        return self._exit_code

    def stop(self, exit_code: int = EXIT_OK) -> None:
        self._exit_code = exit_code
        self._stop.set()

    def start_realtime(self) -> None:
        with self._realtime_lock:
            if self._realtime.is_set():
                logger.info("Realtime sync already running")
                return
            self._realtime.set()
            try:
                self.start_discovery()
            except Exception:
                self._realtime.clear()
                raise
        logger.info("Realtime sync started (%s)", self.mode.label)

    def stop_realtime(self) -> None:
        with self._realtime_lock:
            if not self._realtime.is_set():
                return
            self._realtime.clear()
            self.stop_discovery()
        logger.info("Realtime sync stopped")

    def _on_relay_disconnect(self) -> None:
        self.stop_realtime()

    def _start_maintenance(self) -> None:
        self._maintenance = threading.Thread(
            target=self._maintenance_loop, daemon=True, name="CacheMaintenance"
        )
        self._maintenance.start()

    def _maintenance_loop(self) -> None:
        interval = self.config.cache_cleanup_interval
        while not self._stop.wait(timeout=interval):
            try:
                self.maintain()
            except Exception:
                logger.exception("Cache maintenance failed")
            logger.debug(
                "Cache status: %d known, %d awaiting ack",
                len(self.ctx.known),
                len(self.ctx.ledger),
            )

    # ------------------------------------------------------------------
    # Relay messages
    # ------------------------------------------------------------------

    def handle_message(self, message: dict[str, Any]) -> None:
        kind = message["type"]
        if kind == protocol.SCREENSHOT_RECEIVED:
            file_id, filename = protocol.ack_reference(message)
            self.ctx.ledger.confirm(file_id, filename)
        elif kind == protocol.SCREENSHOT_FAILED:
            file_id, filename = protocol.ack_reference(message)
            if message.get("keepFile") is True:
                self.ctx.ledger.reject(file_id, filename)
            else:
                logger.warning("Consumer could not import %s", filename or file_id)
        elif kind == protocol.START_REALTIME:
            self.start_realtime()
        elif kind == protocol.STOP_REALTIME:
            self.stop_realtime()
        elif kind == protocol.MANUAL_SYNC:
            threading.Thread(
                target=self._run_manual_sync, daemon=True, name="ManualSync"
            ).start()
        elif kind == protocol.SWITCH_SYNC_MODE:
            self._switch_mode(message.get("mode"))
        elif kind == protocol.UPDATE_GIF_BACKUP_SETTING:
            self.config.backup_animations = bool(message.get("enabled"))
            self.config.save()
            logger.info("Animation backup %s", "enabled" if self.config.backup_animations else "disabled")
            self.ctx.relay.send(
                protocol.setting_updated(
                    protocol.GIF_BACKUP_SETTING_UPDATED, self.config.backup_animations
                )
            )
        elif kind == protocol.UPDATE_KEEP_GIF_SETTING:
            self.config.keep_animations_in_source = bool(message.get("enabled"))
            self.config.save()
            self.ctx.relay.send(
                protocol.setting_updated(
                    protocol.KEEP_GIF_SETTING_UPDATED,
                    self.config.keep_animations_in_source,
                )
            )
        else:
            logger.debug("Ignoring %s message", kind)

    def _switch_mode(self, raw_mode: Any) -> None:
        mode = SyncMode.parse(raw_mode if isinstance(raw_mode, str) else None)
        if mode is None:
            logger.warning("Ignoring switch to unknown mode %r", raw_mode)
            return
        if mode is self.mode:
            logger.info("Already running in %s mode", mode.label)
            return
        logger.info("Switching from %s to %s; exiting for restart", self.mode.label, mode.label)
        try:
            self.ctx.mode_record.write(mode)
        except OSError as exc:
            logger.error("Could not write mode record: %s", exc)
        self.stop_realtime()
        self.stop(EXIT_OK)

    # ------------------------------------------------------------------
    # Per-file processing
    # ------------------------------------------------------------------

    def process_file(self, file: RemoteFile, token: FileToken | None = None) -> FileResult:
        """Fetch, dispatch and relay or archive one file.

        Exceptions propagate; :meth:`process_batch` turns them into
        FAILED results.
        """
        token = token or FileToken()
        data = self.fetch(file)
        if token.abandoned:
            raise FileCancelled(file.name)
        dispatch = self.ctx.dispatcher.dispatch(file, data)

        if dispatch.action is Action.UNCONVERTIBLE:
            return FileResult(file, Outcome.UNCONVERTIBLE, dispatch.reason)

        if not token.commit():
            raise FileCancelled(file.name)

        if dispatch.action is Action.ARCHIVE:
            return self._archive(file, data, dispatch)

        return self._relay(file, data, dispatch)

    def _archive(self, file: RemoteFile, data: bytes, dispatch: Dispatch) -> FileResult:
        replace = dispatch.file_class in (FileClass.VIDEO, FileClass.ANIMATION)
        saved = self.ctx.archive.save(data, file.name, file.mime_type, replace=replace)
        if saved is None:
            return FileResult(file, Outcome.FAILED, "could not save to overflow folder")
        # Notify before the source goes away
        if not self.ctx.relay.send(protocol.file_skipped(file.name, dispatch.reason)):
            logger.warning("Skip notice for %s not delivered; relay is down", file.name)
        self.after_archive(file)
        logger.info("Skipped %s (%s); saved to %s", file.name, dispatch.reason, saved)
        return FileResult(file, Outcome.ARCHIVED)

    def _relay(self, file: RemoteFile, data: bytes, dispatch: Dispatch) -> FileResult:
        backed_up = False
        if dispatch.file_class is FileClass.ANIMATION and self.config.backup_animations:
            backed_up = (
                self.ctx.archive.save(data, file.name, file.mime_type, replace=True)
                is not None
            )

        kept = self.keeps_source(file, dispatch)
        message = protocol.screenshot(
            dispatch.payload,
            file.name,
            file.id,
            self.mode.file_ref_key,
            backed_up_locally=backed_up,
            kept_in_source=kept,
        )

        # Register before sending so an immediate ack finds its entry
        tracked = self.config.auto_delete and not kept
        if tracked:
            self.ctx.ledger.register(
                file.id,
                file.name,
                self.config.confirm_timeout(self.mode, len(dispatch.payload)),
                on_confirmed=lambda: self._delete_confirmed(file),
            )

        if not self.ctx.relay.send(message):
            if tracked:
                self.ctx.ledger.cancel(file.id)
            return FileResult(file, Outcome.FAILED, "relay not connected")

        logger.info(
            "Relayed %s (%d KB)%s",
            file.name,
            len(dispatch.payload) // 1024,
            ", kept in source" if kept else "",
        )
        return FileResult(file, Outcome.RELAYED)

    def _delete_confirmed(self, file: RemoteFile) -> None:
        self.delete_source(file)
        logger.info("Deleted %s after ack", file.name)

    def _process_safely(self, file: RemoteFile, token: FileToken) -> FileResult:
        try:
            return self.process_file(file, token)
        except FileCancelled:
            return FileResult(file, Outcome.FAILED, "cancelled")
        except Exception as exc:
            logger.error("Failed to process %s: %s", file.name, exc)
            logger.debug("Traceback for %s", file.name, exc_info=True)
            return FileResult(file, Outcome.FAILED, str(exc) or type(exc).__name__)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def process_batch(
        self, files: Iterable[RemoteFile], timeout: float | None = None
    ) -> BatchReport:
        """Process *files* oldest first with bounded concurrency.

        Each file gets ``file_timeout`` seconds from the moment a worker
        picks it up; the batch as a whole gets *timeout* (default
        ``batch_timeout``).  Files that fail, time out or never start are
        removed from the known set so a later cycle retries them.  A file
        whose worker already committed to sending is waited for instead.

        All batches share the watcher's worker pool, so workers still
        stuck on an abandoned file count against ``concurrency_limit``.
        """
        ordered = sorted(files, key=lambda f: f.sort_key)
        report = BatchReport()
        if not ordered:
            return report

        batch_timeout = self.config.batch_timeout if timeout is None else timeout
        file_timeout = self.config.file_timeout
        started: dict[str, float] = {}
        tokens = {f.id: FileToken() for f in ordered}
        started_lock = threading.Lock()

        def work(file: RemoteFile) -> FileResult:
            with started_lock:
                started[file.id] = self._clock()
            return self._process_safely(file, tokens[file.id])

        executor = self._worker_pool()
        futures: dict[Future, RemoteFile] = {executor.submit(work, f): f for f in ordered}
        pending = set(futures)
        deadline = self._clock() + batch_timeout
        try:
            while pending:
                done, pending = wait(
                    pending, timeout=_BATCH_TICK_SECONDS, return_when=FIRST_COMPLETED
                )
                for fut in done:
                    report.results.append(fut.result())

                now = self._clock()
                with started_lock:
                    overdue = [
                        fut
                        for fut in pending
                        if futures[fut].id in started
                        and now - started[futures[fut].id] >= file_timeout
                    ]
                for fut in overdue:
                    file = futures[fut]
                    if not tokens[file.id].abandon():
                        continue  # already sending
                    pending.discard(fut)
                    logger.warning("Timed out processing %s after %.0fs", file.name, file_timeout)
                    report.results.append(
                        FileResult(file, Outcome.FAILED, f"timed out after {file_timeout:.0f}s")
                    )

                if pending and now >= deadline and not report.timed_out:
                    report.timed_out = True
                    abandoned = [fut for fut in pending if tokens[futures[fut].id].abandon()]
                    logger.warning(
                        "Batch timed out after %.0fs; %d file(s) left for retry",
                        batch_timeout,
                        len(abandoned),
                    )
                    for fut in abandoned:
                        fut.cancel()
                        pending.discard(fut)
                        report.results.append(
                            FileResult(futures[fut], Outcome.FAILED, "batch timed out")
                        )
        finally:
            for fut in pending:
                if tokens[futures[fut].id].abandon():
                    fut.cancel()

        for result in report.results:
            if result.outcome is Outcome.FAILED:
                self.ctx.known.discard(self.dedup_key(result.file))
        if report.total:
            logger.info(
                "Batch done: %d/%d relayed%s",
                report.succeeded,
                report.total,
                " (timed out)" if report.timed_out else "",
            )
        return report

    def _worker_pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.concurrency_limit,
                    thread_name_prefix=f"{self.mode.value}-worker",
                )
            return self._executor

    def _shutdown_workers(self) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Manual sync
    # ------------------------------------------------------------------

    def manual_sync(self) -> BatchReport:
        """Sweep the whole source folder, ignoring what was seen before.

        Files already awaiting an ack are left alone.
        """
        files = [f for f in self.list_for_manual_sync() if f.id not in self.ctx.ledger]
        logger.info("Manual sync: %d file(s) to process", len(files))
        self.ctx.known.update(self.dedup_key(f) for f in files)
        return self.process_batch(files, timeout=self.config.manual_sync_timeout)

    def _run_manual_sync(self) -> None:
        if not self._manual_lock.acquire(blocking=False):
            self.ctx.relay.send(
                protocol.manual_sync_complete(0, 0, message="A manual sync is already running")
            )
            return
        try:
            report = self.manual_sync()
            message = None
            if report.timed_out:
                message = "Manual sync timed out; remaining files will be retried"
            elif report.total == 0:
                message = "No files to sync"
            self.ctx.relay.send(
                protocol.manual_sync_complete(
                    report.succeeded, report.total, report.errors, message
                )
            )
        except Exception as exc:
            logger.exception("Manual sync failed")
            self.ctx.relay.send(
                protocol.manual_sync_complete(0, 0, message=f"Manual sync failed: {exc}")
            )
        finally:
            self._manual_lock.release()
