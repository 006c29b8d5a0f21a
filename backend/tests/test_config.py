"""Tests for relay.settings.yaml / relay.secrets.yaml loading."""
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from upload_relay import config as config_module
from upload_relay.config import AppSettings, get_config, load_config, reset_config

MiB = 1024 * 1024


def _write(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestDefaults:
    def test_defaults(self):
        cfg = AppSettings()
        assert cfg.server.port == 3000
        assert cfg.storage.single_shot_threshold == 25 * MiB
        assert cfg.storage.part_size == 25 * MiB
        assert cfg.storage.max_part_workers == 4
        assert cfg.storage.cdn_base_url == "https://cdn.example.com"
        assert cfg.uploads.max_chunk_size == 15 * MiB
        assert cfg.uploads.legacy_max_file_size == 2 * 1024 * MiB
        assert cfg.uploads.legacy_max_files == 10
        assert cfg.uploads.default_user_id == "guest"
        assert cfg.uploads.key_resolution_max_attempts == 1000
        assert cfg.reaper.session_timeout_seconds == 24 * 3600
        assert cfg.reaper.max_orphan_age_seconds == 2 * 3600
        assert cfg.reaper.interval_seconds == 3600
        assert cfg.reaper.start_delay_seconds == 30

    def test_missing_files_give_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "relay.settings.yaml")
        assert cfg.storage.bucket == "uploads"
        assert cfg.secrets.storage.access_key_id is None


class TestLoadConfig:
    def test_sizes_accept_human_strings(self, tmp_path):
        settings = _write(tmp_path / "relay.settings.yaml", {
            "storage": {"single_shot_threshold": "10MiB", "part_size": "8MiB"},
            "uploads": {"max_chunk_size": "5MiB", "legacy_max_file_size": "1GiB"},
        })
        cfg = load_config(settings)
        assert cfg.storage.single_shot_threshold == 10 * MiB
        assert cfg.storage.part_size == 8 * MiB
        assert cfg.uploads.max_chunk_size == 5 * MiB
        assert cfg.uploads.legacy_max_file_size == 1024 * MiB

    def test_integer_sizes(self, tmp_path):
        settings = _write(tmp_path / "relay.settings.yaml", {
            "storage": {"part_size": 6 * MiB},
        })
        assert load_config(settings).storage.part_size == 6 * MiB

    def test_part_size_minimum(self, tmp_path):
        settings = _write(tmp_path / "relay.settings.yaml", {
            "storage": {"part_size": "1MiB"},
        })
        with pytest.raises(ValidationError):
            load_config(settings)

    def test_worker_minimum(self, tmp_path):
        settings = _write(tmp_path / "relay.settings.yaml", {
            "storage": {"max_part_workers": 0},
        })
        with pytest.raises(ValidationError):
            load_config(settings)

    def test_secrets_are_read_from_sibling_file(self, tmp_path):
        settings = _write(tmp_path / "relay.settings.yaml", {"storage": {"bucket": "media"}})
        _write(tmp_path / "relay.secrets.yaml", {
            "storage": {"access_key_id": "KEY", "secret_access_key": "SECRET"},
        })
        cfg = load_config(settings)
        assert cfg.storage.bucket == "media"
        assert cfg.secrets.storage.access_key_id == "KEY"
        assert cfg.secrets.storage.secret_access_key == "SECRET"

    def test_relative_dirs_resolve_against_settings_dir(self, tmp_path):
        settings = _write(tmp_path / "relay.settings.yaml", {
            "uploads": {"chunk_dir": "data/chunks", "spool_dir": str(tmp_path / "abs")},
        })
        cfg = load_config(settings)
        assert cfg.uploads.chunk_dir == str((tmp_path / "data" / "chunks").resolve())
        assert cfg.uploads.spool_dir == str(tmp_path / "abs")


class TestGetConfig:
    def test_cached_until_reset(self, tmp_path, monkeypatch):
        settings = _write(tmp_path / "relay.settings.yaml", {"server": {"port": 4000}})
        monkeypatch.setattr(config_module, "SETTINGS_FILE", settings)
        reset_config()
        try:
            first = get_config()
            assert first.server.port == 4000
            assert get_config() is first
        finally:
            reset_config()
