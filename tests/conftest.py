"""Shared test fixtures for the ScreenSync test suite."""

import io
import json
import logging
import os
import sys
import threading
import time
from datetime import datetime, timezone

import pytest
from PIL import Image

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from screen_sync.config import Config
from screen_sync.context import EngineContext
from screen_sync.errors import RemoteNotFoundError, StorageError
from screen_sync.formats import FormatDispatcher, ImageConverter
from screen_sync.models import ListPage, RemoteFile
from screen_sync.modes import ModeRecord, SyncMode
from screen_sync.storage import RemoteStorageClient


# ============================================================================
# Media helpers
# ============================================================================

def png_bytes(width=64, height=48, color=(200, 30, 30, 255)):
    """Return an RGBA PNG of the given size."""
    buf = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def gif_bytes(frames=2, size=(16, 16)):
    """Return a small animated GIF."""
    images = [Image.new("P", size, i * 40) for i in range(frames)]
    buf = io.BytesIO()
    images[0].save(buf, format="GIF", save_all=True, append_images=images[1:], duration=100)
    return buf.getvalue()


def mp4_bytes(size=4096):
    """Return bytes that start like an MP4 (ftyp box, isom brand)."""
    header = b"\x00\x00\x00\x18ftypisom\x00\x00\x02\x00isomiso2"
    return header + b"\x00" * (size - len(header))


def heic_bytes(size=2048):
    header = b"\x00\x00\x00\x18ftypheic\x00\x00\x00\x00mif1heic"
    return header + b"\x00" * (size - len(header))


# ============================================================================
# Fake collaborators
# ============================================================================

class FakeStorage(RemoteStorageClient):
    """In-memory storage backend with call tracking."""

    def __init__(self, download_delay=0.0):
        self.folders = {"root": {}}
        self.folder_names = {}
        self.deleted = []
        self.list_calls = []
        self.download_delay = download_delay
        self.fail_downloads = set()
        self.fail_deletes = {}
        self.fail_create = None
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def add_file(self, folder_id, name, data, mime_type="", created_time=None, file_id=None):
        file_id = file_id or f"id-{name}"
        file = RemoteFile(
            id=file_id,
            name=name,
            mime_type=mime_type,
            size=len(data),
            created_time=created_time or datetime.now(timezone.utc),
        )
        self.folders.setdefault(folder_id, {})[file_id] = (file, data)
        return file

    def exists(self, file_id):
        return any(file_id in files for files in self.folders.values())

    def list_folder(self, folder_id, *, created_after=None, page_token=None, page_size=100):
        self.list_calls.append({"folder_id": folder_id, "created_after": created_after})
        if folder_id not in self.folders:
            raise RemoteNotFoundError(f"folder {folder_id} not found")
        files = sorted(
            (f for f, _ in self.folders[folder_id].values()),
            key=lambda f: f.sort_key,
        )
        if created_after is not None:
            files = [f for f in files if f.created_time and f.created_time > created_after]
        start = int(page_token or 0)
        chunk = files[start:start + page_size]
        next_token = str(start + page_size) if start + page_size < len(files) else None
        return ListPage(files=chunk, next_page_token=next_token)

    def download(self, file_id):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.download_delay:
                time.sleep(self.download_delay)
            if file_id in self.fail_downloads:
                raise StorageError(f"download of {file_id} failed")
            for files in self.folders.values():
                if file_id in files:
                    return files[file_id][1]
            raise RemoteNotFoundError(file_id)
        finally:
            with self._lock:
                self.active -= 1

    def delete(self, file_id):
        if file_id in self.fail_deletes:
            raise self.fail_deletes[file_id]
        for files in self.folders.values():
            if file_id in files:
                del files[file_id]
                self.deleted.append(file_id)
                return
        raise RemoteNotFoundError(file_id)

    def create_folder(self, name, parent_id):
        if self.fail_create is not None:
            raise self.fail_create
        if parent_id not in self.folders:
            raise RemoteNotFoundError(f"parent {parent_id} not found")
        for folder_id, (fname, parent) in self.folder_names.items():
            if fname == name and parent == parent_id:
                return folder_id
        folder_id = f"folder-{len(self.folder_names) + 1}"
        self.folder_names[folder_id] = (name, parent_id)
        self.folders[folder_id] = {}
        return folder_id


def fake_storage_factory(config):
    """Factory referenced from config as ``conftest:fake_storage_factory``."""
    return FakeStorage()


def broken_storage_factory(config):
    raise RuntimeError("bad credentials")


class RecordingRelay:
    """Relay stand-in that records every message sent."""

    def __init__(self, connected=True):
        self.connected = connected
        self.sent = []
        self._lock = threading.Lock()

    def send(self, message):
        with self._lock:
            if not self.connected:
                return False
            self.sent.append(message)
            return True

    def of_type(self, kind):
        with self._lock:
            return [m for m in self.sent if m["type"] == kind]


class ManualTimer:
    """threading.Timer replacement that only fires when told to."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


class TimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = ManualTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    def fire_all(self):
        for timer in list(self.timers):
            timer.fire()


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep config, logs and the mode record inside tmp_path."""
    home = tmp_path / "app"
    monkeypatch.setenv("SCREEN_SYNC_HOME", str(home))
    return home


@pytest.fixture
def restore_logging():
    """Undo root logger changes made by setup_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


def make_config(tmp_path, **overrides):
    """Write a config.json with test-friendly values plus *overrides*."""
    data = {
        "overflow_folder": str(tmp_path / "overflow"),
        "local_watch_folder": str(tmp_path / "inbox"),
        "drive_root_folder_id": "root",
        "oss_root_folder": "root",
        "file_timeout_seconds": 5,
        "batch_timeout_seconds": 10,
    }
    data.update(overrides)
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return Config(path)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def relay():
    return RecordingRelay()


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def mode_record(tmp_path):
    return ModeRecord(tmp_path / "sync-mode")


def make_context(config, relay, mode_record, timers, mode=SyncMode.DRIVE, sips_path=None):
    dispatcher = FormatDispatcher(
        ImageConverter(config.max_width, config.jpeg_quality, sips_path=sips_path),
        max_animation_bytes=config.max_animation_bytes,
    )
    return EngineContext.build(
        mode, config, relay, mode_record, timer_factory=timers, dispatcher=dispatcher
    )
