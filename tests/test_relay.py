"""Tests for the relay hub routing and the reconnecting relay client."""

import json
import threading
from types import SimpleNamespace

import pytest
from websockets.exceptions import ConnectionClosedOK

from screen_sync import protocol
from screen_sync.modes import SyncMode
from screen_sync.relay import RelayConnection, build_url
from screen_sync.server import RelayHub, check_writable


class FakeConn:
    """Server-side connection stand-in."""

    def __init__(self, path="/?id=s1&type=consumer", frames=(), fail=False):
        self.request = SimpleNamespace(path=path)
        self.frames = list(frames)
        self.fail = fail
        self.sent = []
        self.closed = False

    def send(self, raw):
        if self.fail:
            raise OSError("broken pipe")
        self.sent.append(json.loads(raw))

    def close(self):
        self.closed = True

    def __iter__(self):
        return iter(self.frames)

    def of_type(self, kind):
        return [m for m in self.sent if m["type"] == kind]


@pytest.fixture
def hub(mode_record, tmp_path):
    return RelayHub(mode_record, tmp_path / "icloud")


@pytest.fixture
def pair(hub):
    consumer, watcher = FakeConn(), FakeConn("/?id=s1&type=watcher")
    hub.register("s1", protocol.CONSUMER, consumer)
    hub.register("s1", protocol.WATCHER, watcher)
    return consumer, watcher


class TestRouting:

    def test_ping(self, hub, pair):
        consumer, watcher = pair
        hub.route("s1", protocol.CONSUMER, {"type": "ping"})
        assert consumer.sent == [{"type": "pong"}]
        assert watcher.sent == []

    def test_get_sync_mode(self, hub, pair, mode_record):
        consumer, _ = pair
        mode_record.write(SyncMode.OSS)
        hub.route("s1", protocol.CONSUMER, {"type": "get-sync-mode"})
        assert consumer.sent == [{"type": "sync-mode-info", "mode": "oss"}]

    def test_consumer_to_watcher(self, hub, pair):
        consumer, watcher = pair
        msg = {"type": "screenshot-received", "fileId": "f1"}
        hub.route("s1", protocol.CONSUMER, msg)
        assert watcher.sent == [msg]
        assert consumer.sent == []

    def test_watcher_to_consumer(self, hub, pair):
        consumer, watcher = pair
        msg = {"type": "screenshot", "bytes": "", "filename": "a.png"}
        hub.route("s1", protocol.WATCHER, msg)
        assert consumer.sent == [msg]
        assert watcher.sent == []

    def test_sessions_are_isolated(self, hub, pair):
        consumer, watcher = pair
        other = FakeConn("/?id=s2&type=watcher")
        hub.register("s2", protocol.WATCHER, other)
        hub.route("s1", protocol.CONSUMER, {"type": "manual-sync"})
        assert other.sent == []
        assert watcher.sent == [{"type": "manual-sync"}]

    def test_control_without_watcher_reports_error(self, hub):
        consumer = FakeConn()
        hub.register("s1", protocol.CONSUMER, consumer)
        hub.route("s1", protocol.CONSUMER, {"type": "start-realtime"})
        assert consumer.of_type("error")[0]["message"] == "Watcher is not connected"

    def test_ack_without_watcher_is_dropped_quietly(self, hub):
        consumer = FakeConn()
        hub.register("s1", protocol.CONSUMER, consumer)
        hub.route("s1", protocol.CONSUMER, {"type": "screenshot-received", "fileId": "f"})
        assert consumer.sent == []

    def test_broken_peer_does_not_raise(self, hub):
        consumer, watcher = FakeConn(), FakeConn(fail=True)
        hub.register("s1", protocol.CONSUMER, consumer)
        hub.register("s1", protocol.WATCHER, watcher)
        hub.route("s1", protocol.CONSUMER, {"type": "manual-sync"})
        assert consumer.of_type("error")


class TestModeSwitch:

    def test_switch_writes_record_and_notifies(self, hub, pair, mode_record):
        consumer, watcher = pair
        hub.route("s1", protocol.CONSUMER, {"type": "switch-sync-mode", "mode": "oss"})

        assert mode_record.read() is SyncMode.OSS
        assert watcher.sent == [{"type": "switch-sync-mode", "mode": "oss"}]
        result = consumer.of_type("switch-sync-mode-result")[0]
        assert result["success"] is True
        assert result["mode"] == "oss"
        assert consumer.of_type("sync-mode-changed") == [
            {"type": "sync-mode-changed", "mode": "oss"}
        ]

    def test_switch_without_watcher_still_records(self, hub, mode_record):
        consumer = FakeConn()
        hub.register("s1", protocol.CONSUMER, consumer)
        hub.route("s1", protocol.CONSUMER, {"type": "switch-sync-mode", "mode": "icloud"})
        assert mode_record.read() is SyncMode.LOCAL
        assert consumer.of_type("switch-sync-mode-result")[0]["success"] is True

    def test_unknown_mode_is_refused(self, hub, pair, mode_record):
        consumer, watcher = pair
        hub.route("s1", protocol.CONSUMER, {"type": "switch-sync-mode", "mode": "ftp"})
        result = consumer.of_type("switch-sync-mode-result")[0]
        assert result["success"] is False
        assert not mode_record.path.exists()
        assert watcher.sent == []

    def test_unwritable_local_folder_is_refused(self, mode_record, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        hub = RelayHub(mode_record, blocker / "icloud")
        consumer = FakeConn()
        hub.register("s1", protocol.CONSUMER, consumer)

        hub.route("s1", protocol.CONSUMER, {"type": "switch-sync-mode", "mode": "local"})

        result = consumer.of_type("switch-sync-mode-result")[0]
        assert result["success"] is False
        assert result["mode"] == "icloud"
        assert not mode_record.path.exists()

    def test_check_writable(self, tmp_path):
        assert check_writable(tmp_path / "new") is None
        assert (tmp_path / "new").is_dir()
        assert list((tmp_path / "new").iterdir()) == []


class TestConnectionHandling:

    def test_handle_routes_frames_then_unregisters(self, hub):
        watcher = FakeConn("/?id=s1&type=watcher")
        hub.register("s1", protocol.WATCHER, watcher)
        consumer = FakeConn(frames=[
            json.dumps({"type": "manual-sync"}),
            "not json",
            json.dumps({"no": "type"}),
            json.dumps({"type": "ping"}),
        ])

        hub.handle(consumer)

        assert watcher.sent == [{"type": "manual-sync"}]
        assert consumer.sent == [{"type": "pong"}]
        assert hub.peer("s1", protocol.CONSUMER) is None
        assert hub.peer("s1", protocol.WATCHER) is watcher

    def test_missing_query_is_rejected(self, hub):
        conn = FakeConn("/")
        hub.handle(conn)
        assert conn.closed
        assert hub.peer("", protocol.CONSUMER) is None

    def test_stale_unregister_keeps_replacement(self, hub):
        old, new = FakeConn(), FakeConn()
        hub.register("s1", protocol.CONSUMER, old)
        hub.register("s1", protocol.CONSUMER, new)
        hub.unregister("s1", protocol.CONSUMER, old)
        assert hub.peer("s1", protocol.CONSUMER) is new


# ============================================================================
# Client
# ============================================================================

class FakeWebSocket:
    def __init__(self, frames, closed_error=False):
        self.frames = frames
        self.closed_error = closed_error
        self.sent = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def __iter__(self):
        yield from self.frames
        if self.closed_error:
            raise ConnectionClosedOK(None, None)

    def send(self, raw):
        self.sent.append(json.loads(raw))

    def close(self):
        pass


class FakeConnect:
    """First call yields *ws*; later calls fail like a server that went away."""

    def __init__(self, ws):
        self.ws = ws
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if len(self.calls) == 1:
            return self.ws
        raise ConnectionRefusedError("relay down")


class TestRelayConnection:

    def test_build_url(self):
        assert build_url("ws://localhost:8888", "s1", "watcher") == (
            "ws://localhost:8888?id=s1&type=watcher"
        )
        assert build_url("ws://h/relay?x=1", "a b", "watcher") == (
            "ws://h/relay?x=1&id=a+b&type=watcher"
        )

    def test_send_while_disconnected(self):
        conn = RelayConnection("ws://localhost:1", "s1")
        assert conn.connected is False
        assert conn.send({"type": "ping"}) is False

    def test_receives_messages_and_reconnects(self):
        ws = FakeWebSocket(
            [json.dumps({"type": "start-realtime"}), "garbage", json.dumps({"type": "stop-realtime"})],
            closed_error=True,
        )
        connect = FakeConnect(ws)
        received, events = [], []
        disconnected = threading.Event()

        def on_message(message):
            received.append(message)
            if message["type"] == "start-realtime":
                raise RuntimeError("handler bug")

        def on_disconnect():
            events.append("disconnect")
            disconnected.set()

        conn = RelayConnection(
            "ws://localhost:8888", "s1", reconnect_delay=0.01, connect=connect
        )
        conn.bind(on_message=on_message, on_connect=lambda: events.append("connect"),
                  on_disconnect=on_disconnect)
        conn.start()
        try:
            assert disconnected.wait(2)
            threading.Event().wait(0.1)
        finally:
            conn.stop()

        assert [m["type"] for m in received] == ["start-realtime", "stop-realtime"]
        assert events == ["connect", "disconnect"]
        assert len(connect.calls) >= 2
        url, kwargs = connect.calls[0]
        assert url == "ws://localhost:8888?id=s1&type=watcher"
        assert kwargs["max_size"] is None
        assert conn.connected is False

    def test_send_during_handler(self):
        ws = FakeWebSocket([json.dumps({"type": "ping-me"})])
        results = []
        done = threading.Event()
        conn = RelayConnection("ws://x", "s1", reconnect_delay=10, connect=FakeConnect(ws))

        def on_message(message):
            results.append(conn.send({"type": "pong"}))
            done.set()

        conn.bind(on_message=on_message)
        conn.start()
        try:
            assert done.wait(2)
        finally:
            conn.stop()
        assert results == [True]
        assert ws.sent == [{"type": "pong"}]
