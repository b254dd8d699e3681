"""Tests for relay message construction and parsing."""

import base64
import json

import pytest

from screen_sync import protocol
from screen_sync.models import BatchReport, FileResult, Outcome, RemoteFile


class TestDecode:

    def test_valid_message(self):
        assert protocol.decode('{"type": "ping"}') == {"type": "ping"}

    def test_bytes_frame(self):
        assert protocol.decode(b'{"type": "ping"}') == {"type": "ping"}

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"no": "type"}', '{"type": 5}'])
    def test_malformed_is_dropped(self, raw):
        assert protocol.decode(raw) is None

    def test_encode_keeps_unicode(self):
        raw = protocol.encode({"type": "screenshot", "filename": "截图.png"})
        assert "截图.png" in raw
        assert json.loads(raw)["filename"] == "截图.png"


class TestScreenshot:

    def test_fields(self):
        msg = protocol.screenshot(b"\xff\xd8jpeg", "shot.png", "f1", "driveFileId")
        assert msg["type"] == "screenshot"
        assert base64.b64decode(msg["bytes"]) == b"\xff\xd8jpeg"
        assert msg["filename"] == "shot.png"
        assert msg["fileId"] == "f1"
        assert msg["driveFileId"] == "f1"
        assert msg["backedUpLocally"] is False
        assert msg["keptInSource"] is False
        assert isinstance(msg["timestamp"], int)

    def test_local_mode_has_no_backend_key(self):
        msg = protocol.screenshot(b"x", "a.png", "/tmp/a.png")
        assert "driveFileId" not in msg
        assert "ossFileId" not in msg


class TestAckReference:

    @pytest.mark.parametrize("message,expected", [
        ({"fileId": "a", "filename": "x.png"}, ("a", "x.png")),
        ({"driveFileId": "b"}, ("b", None)),
        ({"ossFileId": "c"}, ("c", None)),
        ({"filename": "only.png"}, (None, "only.png")),
    ])
    def test_reference(self, message, expected):
        assert protocol.ack_reference({"type": "screenshot-received", **message}) == expected


class TestManualSyncComplete:

    def test_from_report(self):
        report = BatchReport(results=[
            FileResult(RemoteFile("1", "a.png"), Outcome.RELAYED),
            FileResult(RemoteFile("2", "b.mp4"), Outcome.ARCHIVED),
            FileResult(RemoteFile("3", "c.heic"), Outcome.UNCONVERTIBLE, "no sips"),
            FileResult(RemoteFile("4", "d.png"), Outcome.FAILED, "timeout"),
        ])
        msg = protocol.manual_sync_complete(report.succeeded, report.total, report.errors)
        assert msg == {
            "type": "manual-sync-complete",
            "count": 1,
            "total": 4,
            "errors": [
                {"filename": "c.heic", "error": "no sips"},
                {"filename": "d.png", "error": "timeout"},
            ],
        }

    def test_message_is_optional(self):
        assert "message" not in protocol.manual_sync_complete(0, 0)
        assert protocol.manual_sync_complete(0, 0, message="busy")["message"] == "busy"


def test_switch_result_shape():
    assert protocol.switch_result(False, "oss", "nope") == {
        "type": "switch-sync-mode-result",
        "success": False,
        "mode": "oss",
        "message": "nope",
    }
