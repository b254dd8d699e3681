"""
Client side of the relay connection.

A background thread keeps one WebSocket open to the relay server,
reconnecting after a fixed delay whenever the link drops.  Incoming
frames are decoded and handed to ``on_message`` on that same thread;
handlers that take long (a manual sync) must hand off to their own
thread so acks keep flowing.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any
from urllib.parse import urlencode

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect as ws_connect

from screen_sync import protocol

logger = logging.getLogger(__name__)

OPEN_TIMEOUT_SECONDS = 10


def build_url(base_url: str, connection_id: str, client_type: str) -> str:
    """Append the session id and client role as query parameters."""
    sep = "&" if "?" in base_url else "?"
    return f"{base_url}{sep}{urlencode({'id': connection_id, 'type': client_type})}"


class RelayConnection:
    """Persistent, self-reconnecting connection to the relay server."""

    def __init__(
        self,
        url: str,
        connection_id: str,
        client_type: str = protocol.WATCHER,
        on_message: Callable[[dict[str, Any]], None] | None = None,
        on_connect: Callable[[], None] | None = None,
        on_disconnect: Callable[[], None] | None = None,
        reconnect_delay: float = 5.0,
        connect: Callable[..., Any] = ws_connect,
    ):
        self.url = build_url(url, connection_id, client_type)
        self._on_message = on_message
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._reconnect_delay = reconnect_delay
        self._connect = connect
        self._ws: Any = None
        self._send_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def bind(
        self,
        on_message: Callable[[dict[str, Any]], None] | None = None,
        on_connect: Callable[[], None] | None = None,
        on_disconnect: Callable[[], None] | None = None,
    ) -> None:
        """Attach handlers; must be called before :meth:`start`."""
        self._on_message = on_message
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect

    # ---- lifecycle ----

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="RelayConnection"
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except (OSError, WebSocketException):
                pass
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None

    # ---- I/O ----

    def send(self, message: dict[str, Any]) -> bool:
        """Send *message*; return False when the link is down."""
        with self._send_lock:
            ws = self._ws
            if ws is None:
                logger.warning("Relay not connected; dropping %s", message.get("type"))
                return False
            try:
                ws.send(protocol.encode(message))
            except (ConnectionClosed, OSError) as exc:
                logger.warning("Send of %s failed: %s", message.get("type"), exc)
                return False
        return True

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                with self._connect(
                    self.url, open_timeout=OPEN_TIMEOUT_SECONDS, max_size=None
                ) as ws:
                    self._ws = ws
                    logger.info("Connected to relay at %s", self.url)
                    self._fire(self._on_connect)
                    self._receive(ws)
            except (OSError, WebSocketException) as exc:
                if not self._stop.is_set():
                    logger.warning("Relay connection failed: %s", exc)
            finally:
                was_connected = self._ws is not None
                self._ws = None
                if was_connected:
                    logger.info("Disconnected from relay")
                    self._fire(self._on_disconnect)

            if self._stop.wait(timeout=self._reconnect_delay):
                break
            logger.info("Reconnecting to relay...")

    def _receive(self, ws: Any) -> None:
        try:
            for raw in ws:
                message = protocol.decode(raw)
                if message is None:
                    continue
                try:
                    if self._on_message:
                        self._on_message(message)
                except Exception:
                    logger.exception("Error handling %s message", message["type"])
        except ConnectionClosed as exc:
            logger.info("Relay closed the connection (%s)", exc)

    @staticmethod
    def _fire(callback: Callable[[], None] | None) -> None:
        if callback is None:
            return
        try:
            callback()
        except Exception:
            logger.exception("Error in relay connection callback")
