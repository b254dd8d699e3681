"""Delivery ledger: files relayed to the consumer but not yet confirmed.

Every entry owns a single-resolution future and a cancellable timer.
Whoever pops the entry from the map under the lock (an ack, a reject or
the timer) is the only party allowed to resolve it, so a late ack can
never delete a file whose timeout already fired, and vice versa.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Resolution(Enum):
    """How a pending delete ended."""

    CONFIRMED = "confirmed"  # consumer acked; source deleted
    REJECTED = "rejected"  # consumer asked to keep the file
    TIMED_OUT = "timed-out"  # no answer in time; file kept
    SUPERSEDED = "superseded"  # same file relayed again; newer entry wins
    CLOSED = "closed"  # watcher shut down; file kept

    @property
    def deletes(self) -> bool:
        return self is Resolution.CONFIRMED


@dataclass
class PendingDelete:
    """One relayed file awaiting the consumer's answer."""

    file_id: str
    filename: str
    timeout: float
    on_confirmed: Callable[[], None]
    enqueued_at: float = field(default_factory=time.time)
    future: Future = field(default_factory=Future)
    timer: Any = None

    @property
    def resolution(self) -> Resolution | None:
        return self.future.result() if self.future.done() else None


class DeliveryLedger:
    """Lock-guarded map of file id to :class:`PendingDelete`."""

    def __init__(self, timer_factory: Callable[..., Any] = threading.Timer):
        self._timer_factory = timer_factory
        self._entries: dict[str, PendingDelete] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, file_id: object) -> bool:
        with self._lock:
            return file_id in self._entries

    @property
    def pending(self) -> list[PendingDelete]:
        with self._lock:
            return list(self._entries.values())

    def register(
        self,
        file_id: str,
        filename: str,
        timeout: float,
        on_confirmed: Callable[[], None],
    ) -> PendingDelete:
        """Start waiting for the consumer's answer about *file_id*."""
        entry = PendingDelete(file_id, filename, timeout, on_confirmed)
        timer = self._timer_factory(timeout, self._expire, args=(entry,))
        timer.daemon = True
        entry.timer = timer
        with self._lock:
            previous = self._entries.get(file_id)
            self._entries[file_id] = entry
        if previous is not None:
            self._finish(previous, Resolution.SUPERSEDED)
        timer.start()
        logger.debug("Awaiting ack for %s (%.0fs)", filename, timeout)
        return entry

    def confirm(
        self, file_id: str | None = None, filename: str | None = None
    ) -> PendingDelete | None:
        """Resolve an entry as confirmed and run its delete action."""
        entry = self._pop_matching(file_id, filename)
        if entry is None:
            logger.debug("Ack for unknown file (id=%s, name=%s)", file_id, filename)
            return None
        self._finish(entry, Resolution.CONFIRMED)
        try:
            entry.on_confirmed()
        except Exception:
            # Deletion errors are not retried; the file stays in the source
            logger.exception("Delete after ack failed for %s", entry.filename)
        return entry

    def reject(
        self, file_id: str | None = None, filename: str | None = None
    ) -> PendingDelete | None:
        """Resolve an entry as rejected; the source file is kept."""
        entry = self._pop_matching(file_id, filename)
        if entry is None:
            return None
        self._finish(entry, Resolution.REJECTED)
        logger.info("Consumer rejected %s; keeping source file", entry.filename)
        return entry

    def cancel(self, file_id: str) -> PendingDelete | None:
        """Drop an entry whose relay never went out; the source is kept."""
        entry = self._pop_matching(file_id, None)
        if entry is not None:
            self._finish(entry, Resolution.CLOSED)
        return entry

    def close(self) -> None:
        """Resolve everything still pending as kept."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            self._finish(entry, Resolution.CLOSED)
        if entries:
            logger.info("Ledger closed with %d unconfirmed file(s) kept", len(entries))

    def _pop_matching(
        self, file_id: str | None, filename: str | None
    ) -> PendingDelete | None:
        with self._lock:
            if file_id:
                # An id that is no longer pending never falls back to the name
                return self._entries.pop(file_id, None)
            if filename:
                for key, entry in self._entries.items():
                    if entry.filename == filename:
                        return self._entries.pop(key)
        return None

    def _expire(self, entry: PendingDelete) -> None:
        with self._lock:
            if self._entries.get(entry.file_id) is not entry:
                return
            del self._entries[entry.file_id]
        self._finish(entry, Resolution.TIMED_OUT)
        logger.warning(
            "No ack for %s within %.0fs; keeping source file",
            entry.filename,
            entry.timeout,
        )

    @staticmethod
    def _finish(entry: PendingDelete, resolution: Resolution) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        entry.future.set_result(resolution)
