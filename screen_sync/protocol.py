"""JSON message types exchanged over the relay connection."""

from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any

logger = logging.getLogger(__name__)

# Client roles, sent as the ``type`` query parameter
WATCHER = "watcher"
CONSUMER = "consumer"
CLIENT_TYPES = (WATCHER, CONSUMER)

# watcher -> consumer
SCREENSHOT = "screenshot"
FILE_SKIPPED = "file-skipped"
MANUAL_SYNC_COMPLETE = "manual-sync-complete"
GIF_BACKUP_SETTING_UPDATED = "gif-backup-setting-updated"
KEEP_GIF_SETTING_UPDATED = "keep-gif-setting-updated"

# consumer -> watcher
SCREENSHOT_RECEIVED = "screenshot-received"
SCREENSHOT_FAILED = "screenshot-failed"
START_REALTIME = "start-realtime"
STOP_REALTIME = "stop-realtime"
MANUAL_SYNC = "manual-sync"
UPDATE_GIF_BACKUP_SETTING = "update-gif-backup-setting"
UPDATE_KEEP_GIF_SETTING = "update-keep-gif-setting"

# handled by the relay server
PING = "ping"
PONG = "pong"
GET_SYNC_MODE = "get-sync-mode"
SYNC_MODE_INFO = "sync-mode-info"
SWITCH_SYNC_MODE = "switch-sync-mode"
SWITCH_SYNC_MODE_RESULT = "switch-sync-mode-result"
SYNC_MODE_CHANGED = "sync-mode-changed"
ERROR = "error"

# Messages that need a live watcher; the consumer gets ``error`` otherwise
WATCHER_CONTROL = frozenset(
    {
        START_REALTIME,
        STOP_REALTIME,
        MANUAL_SYNC,
        UPDATE_GIF_BACKUP_SETTING,
        UPDATE_KEEP_GIF_SETTING,
    }
)


def encode(message: dict[str, Any]) -> str:
    return json.dumps(message, ensure_ascii=False)


def decode(raw: str | bytes) -> dict[str, Any] | None:
    """Parse one frame; return None for anything that is not a typed object."""
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("Dropping malformed message: %s", exc)
        return None
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        logger.warning("Dropping message without a type")
        return None
    return message


def now_ms() -> int:
    return int(time.time() * 1000)


def screenshot(
    payload: bytes,
    filename: str,
    file_id: str,
    file_ref_key: str | None = None,
    backed_up_locally: bool = False,
    kept_in_source: bool = False,
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "type": SCREENSHOT,
        "bytes": base64.b64encode(payload).decode("ascii"),
        "filename": filename,
        "timestamp": now_ms(),
        "fileId": file_id,
        "backedUpLocally": backed_up_locally,
        "keptInSource": kept_in_source,
    }
    if file_ref_key:
        message[file_ref_key] = file_id
    return message


def file_skipped(filename: str, reason: str) -> dict[str, Any]:
    return {"type": FILE_SKIPPED, "filename": filename, "reason": reason}


def manual_sync_complete(
    count: int,
    total: int,
    errors: list[dict[str, str]] | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    result: dict[str, Any] = {
        "type": MANUAL_SYNC_COMPLETE,
        "count": count,
        "total": total,
        "errors": errors or [],
    }
    if message:
        result["message"] = message
    return result


def ack_reference(message: dict[str, Any]) -> tuple[str | None, str | None]:
    """Return ``(file_id, filename)`` referenced by an ack or reject."""
    file_id = (
        message.get("fileId") or message.get("driveFileId") or message.get("ossFileId")
    )
    return file_id, message.get("filename")


def setting_updated(kind: str, enabled: bool) -> dict[str, Any]:
    return {"type": kind, "enabled": enabled}


def switch_result(success: bool, mode: str | None, message: str) -> dict[str, Any]:
    return {
        "type": SWITCH_SYNC_MODE_RESULT,
        "success": success,
        "mode": mode,
        "message": message,
    }


def error(message: str) -> dict[str, Any]:
    return {"type": ERROR, "message": message}
