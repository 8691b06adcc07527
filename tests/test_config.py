"""Tests for the settings schema and its JSON persistence."""
import json

import pytest
from pydantic import ValidationError

from audrip.config import ConfigManager, Settings
from audrip.jobs import TargetFormat


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.max_concurrent_jobs == 2
        assert settings.max_concurrent_probes == 8
        assert settings.cancel_grace_delay == 0.2
        assert settings.square_art_size == 1000
        assert settings.default_format is TargetFormat.MP3

    def test_log_level_is_normalized(self) -> None:
        assert Settings(log_level='debug').log_level == 'DEBUG'
        with pytest.raises(ValidationError):
            Settings(log_level='chatty')

    def test_bounds(self) -> None:
        with pytest.raises(ValidationError):
            Settings(max_concurrent_jobs=0)

    def test_user_paths_are_expanded(self) -> None:
        assert '~' not in str(Settings(download_dir='~/Music').download_dir)


class TestConfigManager:
    def test_missing_file_writes_defaults(self, tmp_path) -> None:
        path = tmp_path / 'config.json'
        settings = ConfigManager(path).load()
        assert settings == Settings()
        assert json.loads(path.read_text())['max_concurrent_jobs'] == 2

    def test_round_trip(self, tmp_path) -> None:
        manager = ConfigManager(tmp_path / 'config.json')
        manager.save(Settings(max_concurrent_jobs=4, default_format='m4a'))
        loaded = manager.load()
        assert loaded.max_concurrent_jobs == 4
        assert loaded.default_format is TargetFormat.M4A

    def test_corrupt_file_is_backed_up(self, tmp_path) -> None:
        path = tmp_path / 'config.json'
        path.write_text('{"max_concurrent_jobs": 99}')
        settings = ConfigManager(path).load()
        assert settings.max_concurrent_jobs == 2
        assert not path.exists()
        assert len(list(tmp_path.glob('config.*.bak'))) == 1
