"""
Tests for the configuration model and INI config manager.
"""

import configparser

import pytest
from pydantic import ValidationError

from tubefetch.exceptions import ConfigurationError
from tubefetch.models.config import ExtractionOptions, ServerConfig, normalize_quality
from tubefetch.storage.config_manager import ConfigManager


class TestServerConfig:
    def test_defaults(self):
        config = ServerConfig()
        assert config.port == 4000
        assert config.audio_timeout == 600
        assert config.video_timeout == 1200
        assert config.metadata_timeout == 30
        assert config.cancel_grace == 5
        assert config.retention_interval == 600
        assert config.retention_max_age == 3600
        assert config.heuristic_cleanup is True

    def test_timeout_for_format(self):
        config = ServerConfig()
        assert config.timeout_for("audio") == 600
        assert config.timeout_for("video") == 1200

    def test_rejects_invalid_port(self):
        with pytest.raises(ValidationError):
            ServerConfig(port=70000)

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            ServerConfig(audio_timeout=0)

    def test_video_timeout_not_below_audio(self):
        with pytest.raises(ValidationError):
            ServerConfig(audio_timeout=100, video_timeout=50)

    def test_ini_keys_exclude_internal_fields(self):
        keys = ServerConfig.get_ini_keys()
        assert "config_path" not in keys
        assert "download_dir" in keys


class TestExtractionOptions:
    @pytest.mark.parametrize(
        "value,expected",
        [("320", "320"), ("128k", "128"), (320, "320"), ("999", "192"), (None, "192")],
    )
    def test_quality_normalization(self, value, expected):
        assert normalize_quality(value) == expected

    def test_defaults_to_audio(self):
        options = ExtractionOptions()
        assert options.media_format == "audio"
        assert options.quality == "192"

    def test_rejects_unknown_format(self):
        with pytest.raises(ValidationError):
            ExtractionOptions(media_format="flac")

    def test_is_immutable(self):
        options = ExtractionOptions()
        with pytest.raises(ValidationError):
            options.quality = "320"


class TestConfigManager:
    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigManager(tmp_path / "config.ini").load_config()
        assert config.port == 4000
        assert config.config_path == str(tmp_path)

    def test_save_and_load_roundtrip(self, tmp_path):
        manager = ConfigManager(tmp_path / "sub" / "config.ini")
        manager.save_new_config({"port": 5050, "download_dir": "/srv/media"})

        config = ConfigManager(manager.config_file_path).load_config()
        assert config.port == 5050
        assert config.download_dir == "/srv/media"
        assert config.heuristic_cleanup is True

    def test_cli_overrides_skip_none(self, tmp_path):
        manager = ConfigManager(tmp_path / "config.ini")
        manager.save_new_config({"port": 5050})
        config = manager.load_config({"port": None, "host": "0.0.0.0"})
        assert config.port == 5050
        assert config.host == "0.0.0.0"

    def test_migrates_missing_keys(self, tmp_path):
        path = tmp_path / "config.ini"
        path.write_text("[DEFAULT]\nport = 4100\n", encoding="utf-8")

        config = ConfigManager(path).load_config()
        assert config.port == 4100

        parser = configparser.ConfigParser(interpolation=None)
        parser.read(path, encoding="utf-8")
        assert parser["DEFAULT"]["audio_timeout"] == "600.0"
        assert parser["DEFAULT"]["heuristic_cleanup"] == "true"

    def test_invalid_value_raises_configuration_error(self, tmp_path):
        path = tmp_path / "config.ini"
        path.write_text("[DEFAULT]\naudio_timeout = soon\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            ConfigManager(path).load_config()

    def test_failed_validation_raises_configuration_error(self, tmp_path):
        path = tmp_path / "config.ini"
        path.write_text("[DEFAULT]\nport = 0\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            ConfigManager(path).load_config()
