"""
Process supervisor.

Keeps the relay server and exactly one watcher process alive.  The
watcher is restarted without limit (with exponential backoff when it
reports a configuration fault); the relay server gets a bounded number
of restarts, after which everything is shut down.  The shared mode
record decides which watcher runs: a watcher exits by itself on
``switch-sync-mode`` and the supervisor also polls the record, so
changes made outside the consumer are picked up too.

A replacement watcher is only spawned once the previous process has
been seen to exit.
"""

from __future__ import annotations

import logging
import signal
import subprocess
import sys
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from screen_sync.config import Config
from screen_sync.errors import EXIT_CONFIG_ERROR, EXIT_CRASH, EXIT_OK
from screen_sync.modes import ModeRecord, SyncMode

logger = logging.getLogger(__name__)

_TICK_SECONDS = 0.5
_CONFIG_BACKOFF_START = 2.0


class Phase(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"


@dataclass
class SupervisorState:
    """Everything the supervisor knows about its children."""

    watcher: Any = None
    watcher_mode: SyncMode | None = None
    restart_count: int = 0
    desired_mode: SyncMode | None = None
    relay: Any = None
    relay_restart_count: int = 0
    phase: Phase = Phase.IDLE
    next_watcher_start: float | None = None
    config_backoff: float = 0.0


def module_command(*args: str) -> list[str]:
    """Command line running this package as a module with *args*."""
    return [sys.executable, "-m", "screen_sync", *args]


def default_spawn(command: Sequence[str]) -> subprocess.Popen:
    return subprocess.Popen(list(command))


class Supervisor:
    """Tick-driven state machine over the relay and watcher processes."""

    def __init__(
        self,
        config: Config,
        mode_record: ModeRecord,
        spawn: Callable[[Sequence[str]], Any] = default_spawn,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.mode_record = mode_record
        self.state = SupervisorState()
        self._spawn = spawn
        self._clock = clock
        self._sleep = sleep
        self._next_mode_poll = 0.0
        self._stopping = False
        self.exit_code = EXIT_OK

    # ---- commands ----

    def watcher_command(self, mode: SyncMode) -> list[str]:
        return module_command("watch", "--mode", mode.value)

    def relay_command(self) -> list[str]:
        return module_command("relay")

    # ---- lifecycle ----

    def start(self) -> None:
        """Start the relay server and schedule the first watcher."""
        st = self.state
        st.phase = Phase.STARTING
        st.desired_mode = self.mode_record.ensure()
        logger.info("Starting in %s mode", st.desired_mode.label)
        st.relay = self._spawn(self.relay_command())
        now = self._clock()
        st.next_watcher_start = now + self.config.watcher_start_delay
        self._next_mode_poll = now + self.config.mode_poll_interval

    def run(self) -> int:
        """Run until a signal or a fatal relay failure; return the exit code."""

        def _handler(sig, frame):
            logger.info("Received signal %d; shutting down", sig)
            self._stopping = True

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

        self.start()
        try:
            while not self._stopping and self.tick():
                self._sleep(_TICK_SECONDS)
        finally:
            self.shutdown()
        return self.exit_code

    def request_stop(self) -> None:
        self._stopping = True

    def tick(self) -> bool:
        """Advance the state machine once; return False when it must stop."""
        if not self._check_relay():
            return False
        now = self._clock()
        if now >= self._next_mode_poll:
            self._next_mode_poll = now + self.config.mode_poll_interval
            self._check_mode_record()
        self._check_watcher()
        self._maybe_start_watcher()
        return True

    def shutdown(self) -> None:
        st = self.state
        if st.phase is Phase.STOPPED:
            return
        self._stop_child(st.watcher, "watcher")
        st.watcher = None
        self._stop_child(st.relay, "relay server")
        st.relay = None
        st.phase = Phase.STOPPED
        logger.info("Supervisor stopped")

    # ---- relay ----

    def _check_relay(self) -> bool:
        st = self.state
        if st.relay is None or st.relay.poll() is None:
            return True
        code = st.relay.returncode
        if st.relay_restart_count >= self.config.relay_max_restarts:
            logger.critical(
                "Relay server exited with code %s and was already restarted %d times; "
                "giving up",
                code,
                st.relay_restart_count,
            )
            st.relay = None
            self.exit_code = EXIT_CRASH
            self.shutdown()
            return False
        st.relay_restart_count += 1
        logger.error(
            "Relay server exited with code %s; restarting (%d/%d)",
            code,
            st.relay_restart_count,
            self.config.relay_max_restarts,
        )
        st.relay = self._spawn(self.relay_command())
        return True

    # ---- watcher ----

    def _check_mode_record(self) -> None:
        st = self.state
        mode = self.mode_record.read()
        if mode is st.desired_mode:
            return
        logger.info("Mode record changed to %s", mode.label)
        st.desired_mode = mode
        if st.watcher is not None and st.watcher_mode is not mode:
            self._stop_child(st.watcher, f"{st.watcher_mode.value} watcher")
            st.watcher = None
            self._schedule_restart(self.config.mode_switch_delay)

    def _check_watcher(self) -> None:
        st = self.state
        if st.watcher is None:
            return
        code = st.watcher.poll()
        if code is None:
            return

        previous = st.watcher_mode
        st.watcher = None
        recorded = self.mode_record.read()

        if code == EXIT_OK and recorded is not previous:
            logger.info("Watcher exited for a switch to %s", recorded.label)
            st.desired_mode = recorded
            st.config_backoff = 0.0
            delay = self.config.mode_switch_delay
        elif code == EXIT_CONFIG_ERROR:
            st.config_backoff = min(
                max(st.config_backoff * 2, _CONFIG_BACKOFF_START),
                self.config.config_error_max_backoff,
            )
            delay = st.config_backoff
            logger.error(
                "Watcher reported a configuration error; retrying in %.0fs", delay
            )
        else:
            st.config_backoff = 0.0
            delay = self.config.watcher_restart_delay
            logger.warning("Watcher exited with code %s; restarting in %.0fs", code, delay)
        self._schedule_restart(delay)

    def _schedule_restart(self, delay: float) -> None:
        st = self.state
        st.restart_count += 1
        st.phase = Phase.RESTARTING
        st.next_watcher_start = self._clock() + delay

    def _maybe_start_watcher(self) -> None:
        st = self.state
        if st.watcher is not None or st.next_watcher_start is None:
            return
        if self._clock() < st.next_watcher_start:
            return
        mode = st.desired_mode or self.mode_record.read()
        st.watcher = self._spawn(self.watcher_command(mode))
        st.watcher_mode = mode
        st.next_watcher_start = None
        st.phase = Phase.RUNNING
        logger.info("Started %s watcher", mode.label)

    def _stop_child(self, proc: Any, name: str) -> None:
        """Terminate *proc* and wait until its exit has been observed."""
        if proc is None or proc.poll() is not None:
            return
        logger.info("Stopping %s", name)
        proc.terminate()
        try:
            proc.wait(timeout=self.config.stop_grace)
        except subprocess.TimeoutExpired:
            logger.warning("%s did not exit in %.0fs; killing", name, self.config.stop_grace)
            proc.kill()
            proc.wait()
