"""Tests for configuration loading, accessors and storage client loading."""

import json

import pytest

from conftest import FakeStorage, make_config

from screen_sync.config import DEFAULT_CONFIG, Config, get_config_path
from screen_sync.errors import StartupError
from screen_sync.modes import SyncMode
from screen_sync.storage import load_client


class TestConfigFile:

    def test_missing_file_is_created_with_defaults(self, tmp_path):
        path = tmp_path / "sub" / "config.json"
        config = Config(path)
        assert path.exists()
        assert json.loads(path.read_text())["relay_url"] == DEFAULT_CONFIG["relay_url"]
        assert config.relay_port == 8888

    def test_default_path_uses_app_home(self, isolated_home):
        assert get_config_path() == isolated_home / "config.json"
        assert Config().path == isolated_home / "config.json"

    def test_stored_values_override_defaults(self, tmp_path):
        config = make_config(tmp_path, jpeg_quality=70, relay_url="ws://relay:9000")
        assert config.jpeg_quality == 70
        assert config.relay_url == "ws://relay:9000"
        # Keys absent from the file still get defaults
        assert config.concurrency_limit == 3

    def test_corrupt_file_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert Config(path).max_width == 1920

    def test_save_round_trip(self, config):
        config.auto_delete = False
        config.set_folder_ref(SyncMode.OSS, "oss-folder")
        config.save()
        reloaded = Config(config.path)
        assert reloaded.auto_delete is False
        assert reloaded.folder_ref(SyncMode.OSS) == "oss-folder"


class TestAccessors:

    def test_per_mode_poll_interval(self, config):
        assert config.poll_interval(SyncMode.DRIVE) == 2
        assert config.poll_interval(SyncMode.OSS) == 5

    def test_poll_interval_minimum(self, tmp_path):
        config = make_config(tmp_path, poll_interval_seconds={"drive": 0})
        assert config.poll_interval(SyncMode.DRIVE) == 1

    def test_scalar_poll_interval(self, tmp_path):
        config = make_config(tmp_path, poll_interval_seconds=7)
        assert config.poll_interval(SyncMode.OSS) == 7

    @pytest.mark.parametrize("mode,expected", [
        (SyncMode.DRIVE, 120),
        (SyncMode.OSS, 90),
        (SyncMode.LOCAL, 30),
    ])
    def test_confirm_timeout_per_mode(self, config, mode, expected):
        assert config.confirm_timeout(mode) == expected

    def test_confirm_timeout_for_large_payload(self, config):
        big = 10 * 1024 * 1024
        assert config.confirm_timeout(SyncMode.LOCAL, big) == 120
        assert config.confirm_timeout(SyncMode.LOCAL, big - 1) == 30

    def test_setters_clamp(self, config):
        config.jpeg_quality = 500
        assert config.jpeg_quality == 95
        config.jpeg_quality = -3
        assert config.jpeg_quality == 1
        config.concurrency_limit = 0
        assert config.concurrency_limit == 1
        config.max_known_files = 1
        assert config.max_known_files == 2
        config.stable_time = -1
        assert config.stable_time == 0

    def test_folder_refs_are_per_backend(self, config):
        assert config.folder_ref(SyncMode.DRIVE) is None
        assert config.folder_ref(SyncMode.LOCAL) is None
        config.set_folder_ref(SyncMode.DRIVE, "d1")
        assert config.folder_ref(SyncMode.DRIVE) == "d1"
        assert config.folder_ref(SyncMode.OSS) is None

    def test_root_folder(self, config):
        assert config.root_folder(SyncMode.DRIVE) == "root"
        config.set_root_folder(SyncMode.OSS, "  bucket/prefix  ")
        assert config.root_folder(SyncMode.OSS) == "bucket/prefix"
        assert config.root_folder(SyncMode.LOCAL) == ""

    def test_overflow_folder_falls_back_when_parent_missing(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            "screen_sync.config.get_default_overflow_dir", lambda: tmp_path / "default"
        )
        config = make_config(tmp_path, overflow_folder=str(tmp_path / "no" / "such" / "dir"))
        assert config.overflow_folder == tmp_path / "default"

    def test_overflow_folder_custom(self, config, tmp_path):
        assert config.overflow_folder == tmp_path / "overflow"

    def test_default_mode(self, tmp_path):
        assert make_config(tmp_path, default_mode="aliyun").default_mode is SyncMode.OSS
        assert make_config(tmp_path, default_mode="bogus").default_mode is SyncMode.DRIVE

    def test_folder_settings_are_read_only(self, config):
        for name in ("default_mode", "local_watch_folder", "overflow_folder", "relay_url"):
            with pytest.raises(AttributeError):
                setattr(config, name, "x")

    def test_local_watch_folder_custom(self, config, tmp_path):
        assert config.local_watch_folder == tmp_path / "inbox"


class TestLoadClient:

    def test_missing_factory(self, config):
        with pytest.raises(StartupError, match="storage_clients.drive"):
            load_client(config, SyncMode.DRIVE)

    def test_colon_path(self, config):
        config.set_storage_client_factory(SyncMode.DRIVE, "conftest:fake_storage_factory")
        assert isinstance(load_client(config, SyncMode.DRIVE), FakeStorage)

    def test_dotted_path(self, config):
        config.set_storage_client_factory(SyncMode.OSS, "conftest.fake_storage_factory")
        assert isinstance(load_client(config, SyncMode.OSS), FakeStorage)

    def test_unimportable(self, config):
        config.set_storage_client_factory(SyncMode.DRIVE, "no_such_module:make")
        with pytest.raises(StartupError, match="Cannot load"):
            load_client(config, SyncMode.DRIVE)

    def test_factory_failure(self, config):
        config.set_storage_client_factory(SyncMode.DRIVE, "conftest:broken_storage_factory")
        with pytest.raises(StartupError, match="bad credentials"):
            load_client(config, SyncMode.DRIVE)

    def test_wrong_type(self, config):
        config.set_storage_client_factory(SyncMode.DRIVE, "builtins:repr")
        with pytest.raises(StartupError, match="not a RemoteStorageClient"):
            load_client(config, SyncMode.DRIVE)
