"""Per-watcher engine state, built once at start-up and passed down."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from screen_sync.archive import OverflowArchive
from screen_sync.cache import KnownFileSet
from screen_sync.config import Config
from screen_sync.formats import FormatDispatcher
from screen_sync.ledger import DeliveryLedger
from screen_sync.modes import ModeRecord, SyncMode


@dataclass
class EngineContext:
    """Everything one watcher instance owns.

    ``relay`` is anything with ``send(dict) -> bool``; the runtime uses a
    :class:`~screen_sync.relay.RelayConnection`, tests use a recorder.
    """

    mode: SyncMode
    config: Config
    relay: Any
    mode_record: ModeRecord
    known: KnownFileSet
    ledger: DeliveryLedger
    archive: OverflowArchive
    dispatcher: FormatDispatcher

    @classmethod
    def build(
        cls,
        mode: SyncMode,
        config: Config,
        relay: Any,
        mode_record: ModeRecord,
        timer_factory: Callable[..., Any] = threading.Timer,
        dispatcher: FormatDispatcher | None = None,
    ) -> EngineContext:
        return cls(
            mode=mode,
            config=config,
            relay=relay,
            mode_record=mode_record,
            known=KnownFileSet(config.max_known_files),
            ledger=DeliveryLedger(timer_factory=timer_factory),
            archive=OverflowArchive(config.overflow_folder),
            dispatcher=dispatcher or FormatDispatcher.from_config(config),
        )
