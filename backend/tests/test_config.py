"""
Tests for environment-driven settings.
"""

from pathlib import Path

import pytest

from mediajobs.config import (
    DEFAULT_DB_PATH,
    ENV_CORS_ORIGINS,
    ENV_DB_PATH,
    ENV_DOWNLOADS_DIR,
    ENV_FFMPEG_PATH,
    ENV_MAX_CONCURRENT_STAGES,
    ENV_STAGE_TIMEOUT,
    ENV_WHISPER_MODEL,
    ConfigError,
    load_settings,
)


class TestLoadSettings:

    def test_defaults(self):
        settings = load_settings({})
        assert settings.db_path == DEFAULT_DB_PATH
        assert settings.max_concurrent_stages == 2
        assert settings.stage_timeout == 3600.0
        assert settings.ffmpeg_path is None
        assert settings.cors_origins == ["http://localhost:5173"]

    def test_overrides(self, tmp_path):
        settings = load_settings({
            ENV_DOWNLOADS_DIR: str(tmp_path / "dl"),
            ENV_DB_PATH: str(tmp_path / "jobs.db"),
            ENV_MAX_CONCURRENT_STAGES: "4",
            ENV_FFMPEG_PATH: "/opt/ffmpeg/bin/ffmpeg",
            ENV_WHISPER_MODEL: " /models/ggml-base.bin ",
            ENV_CORS_ORIGINS: "http://a.test, http://b.test,",
        })

        assert settings.downloads_dir == tmp_path / "dl"
        assert settings.db_path == tmp_path / "jobs.db"
        assert settings.max_concurrent_stages == 4
        assert settings.ffmpeg_path == "/opt/ffmpeg/bin/ffmpeg"
        assert settings.whisper_model == "/models/ggml-base.bin"
        assert settings.cors_origins == ["http://a.test", "http://b.test"]

    def test_empty_db_path_disables_persistence(self):
        assert load_settings({ENV_DB_PATH: ""}).db_path is None

    def test_zero_timeout_means_no_limit(self):
        assert load_settings({ENV_STAGE_TIMEOUT: "0"}).stage_timeout is None

    def test_home_is_expanded(self):
        settings = load_settings({ENV_DOWNLOADS_DIR: "~/media"})
        assert settings.downloads_dir == Path.home() / "media"

    @pytest.mark.parametrize("variable, value", [
        (ENV_MAX_CONCURRENT_STAGES, "many"),
        (ENV_MAX_CONCURRENT_STAGES, "0"),
        (ENV_STAGE_TIMEOUT, "-5"),
    ])
    def test_invalid_values(self, variable, value):
        with pytest.raises(ConfigError) as exc_info:
            load_settings({variable: value})
        assert exc_info.value.variable == variable

    def test_settings_are_frozen(self):
        settings = load_settings({})
        with pytest.raises(Exception):
            settings.max_concurrent_stages = 8
