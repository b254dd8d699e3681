"""
Relay server: the hub both the watcher and the consumer connect to.

Clients join a session with ``?id=<connection_id>&type=<watcher|consumer>``.
Within a session, consumer messages go to the watcher and watcher
messages go to the consumer.  The hub answers ``ping`` and
``get-sync-mode`` itself and owns the first half of a mode switch:
it validates the target, writes the mode record, tells the watcher and
reports back to the consumer.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlsplit

from websockets.exceptions import ConnectionClosed
from websockets.sync.server import serve

from screen_sync import protocol
from screen_sync.modes import ModeRecord, SyncMode

logger = logging.getLogger(__name__)


def check_writable(folder: Path) -> str | None:
    """Create *folder* if needed and probe it; return an error text or None."""
    try:
        folder.mkdir(parents=True, exist_ok=True)
        if not folder.is_dir():
            return f"{folder} is not a directory"
        probe = folder / ".screensync-write-test"
        probe.write_text("test", encoding="utf-8")
        probe.unlink()
    except OSError as exc:
        return str(exc)
    return None


class RelayHub:
    """Routes typed JSON messages between the two members of each session."""

    def __init__(
        self,
        mode_record: ModeRecord,
        local_folder: Path,
        host: str = "127.0.0.1",
        port: int = 8888,
    ):
        self.mode_record = mode_record
        self.local_folder = Path(local_folder)
        self.host = host
        self.port = port
        self._sessions: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._server: Any = None

    # ---- membership ----

    def register(self, connection_id: str, client_type: str, conn: Any) -> None:
        with self._lock:
            self._sessions.setdefault(connection_id, {})[client_type] = conn
        logger.info("%s joined session %s", client_type, connection_id)

    def unregister(self, connection_id: str, client_type: str, conn: Any) -> None:
        with self._lock:
            group = self._sessions.get(connection_id)
            if not group or group.get(client_type) is not conn:
                return
            del group[client_type]
            if not group:
                del self._sessions[connection_id]
        logger.info("%s left session %s", client_type, connection_id)

    def peer(self, connection_id: str, client_type: str) -> Any:
        with self._lock:
            return self._sessions.get(connection_id, {}).get(client_type)

    # ---- routing ----

    def route(self, connection_id: str, client_type: str, message: dict[str, Any]) -> None:
        """Handle one message from *client_type* in session *connection_id*."""
        kind = message["type"]
        sender = self.peer(connection_id, client_type)

        if kind == protocol.PING:
            self._send(sender, {"type": protocol.PONG})
            return

        if kind == protocol.GET_SYNC_MODE:
            self._send(
                sender,
                {"type": protocol.SYNC_MODE_INFO, "mode": self.mode_record.read().value},
            )
            return

        if kind == protocol.SWITCH_SYNC_MODE:
            self._switch_mode(connection_id, sender, message)
            return

        if client_type == protocol.CONSUMER:
            watcher = self.peer(connection_id, protocol.WATCHER)
            if self._send(watcher, message):
                return
            if kind in protocol.WATCHER_CONTROL:
                self._send(sender, protocol.error("Watcher is not connected"))
            else:
                logger.debug("No watcher in %s for %s", connection_id, kind)
            return

        consumer = self.peer(connection_id, protocol.CONSUMER)
        if not self._send(consumer, message):
            logger.debug("No consumer in %s for %s", connection_id, kind)

    def _switch_mode(self, connection_id: str, sender: Any, message: dict[str, Any]) -> None:
        mode = SyncMode.parse(message.get("mode"))
        if mode is None:
            self._send(
                sender,
                protocol.switch_result(
                    False, message.get("mode"), f"Unknown sync mode {message.get('mode')!r}"
                ),
            )
            return

        if mode is SyncMode.LOCAL:
            problem = check_writable(self.local_folder)
            if problem:
                logger.warning("Cannot switch to %s: %s", mode.label, problem)
                self._send(
                    sender,
                    protocol.switch_result(
                        False,
                        mode.value,
                        f"Cannot use {self.local_folder}: {problem}. "
                        "Check that iCloud Drive is enabled and has free space.",
                    ),
                )
                return

        try:
            self.mode_record.write(mode)
        except OSError as exc:
            logger.error("Could not write mode record: %s", exc)

        watcher = self.peer(connection_id, protocol.WATCHER)
        self._send(watcher, {"type": protocol.SWITCH_SYNC_MODE, "mode": mode.value})
        self._send(
            sender,
            protocol.switch_result(True, mode.value, f"Sync mode switched to {mode.label}"),
        )
        self._send(sender, {"type": protocol.SYNC_MODE_CHANGED, "mode": mode.value})

    @staticmethod
    def _send(conn: Any, message: dict[str, Any]) -> bool:
        if conn is None:
            return False
        try:
            conn.send(protocol.encode(message))
        except (ConnectionClosed, OSError) as exc:
            logger.warning("Could not deliver %s: %s", message["type"], exc)
            return False
        return True

    # ---- websocket server ----

    def handle(self, conn: Any) -> None:
        """Serve one client connection until it closes."""
        query = parse_qs(urlsplit(conn.request.path).query)
        connection_id = (query.get("id") or [""])[0]
        client_type = (query.get("type") or [""])[0]
        if not connection_id or client_type not in protocol.CLIENT_TYPES:
            logger.warning("Rejecting connection without id/type: %s", conn.request.path)
            conn.close()
            return

        self.register(connection_id, client_type, conn)
        try:
            for raw in conn:
                message = protocol.decode(raw)
                if message is not None:
                    self.route(connection_id, client_type, message)
        except ConnectionClosed:
            pass
        finally:
            self.unregister(connection_id, client_type, conn)

    def serve_forever(self) -> None:
        with serve(self.handle, self.host, self.port, max_size=None) as server:
            self._server = server
            logger.info("Relay server listening on ws://%s:%d", self.host, self.port)
            server.serve_forever()
        logger.info("Relay server stopped.")

    def shutdown(self) -> None:
        if self._server is not None:
            self._server.shutdown()
