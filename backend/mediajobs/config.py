"""
Application settings.

Settings are read once from environment variables by load_settings() and
passed explicitly to create_app() and the CLI. Nothing reads os.environ
after startup.

Environment variables:
    MEDIAJOBS_DOWNLOADS_DIR          Root for job directories (default ~/Downloads/mediajobs)
    MEDIAJOBS_DB_PATH                SQLite file; empty string disables persistence
                                     (default ~/.mediajobs/jobs.db)
    MEDIAJOBS_MAX_CONCURRENT_STAGES  Executors running at once (default 2)
    MEDIAJOBS_YTDLP_PATH             yt-dlp binary (default: search PATH)
    MEDIAJOBS_FFMPEG_PATH            ffmpeg binary (default: search PATH)
    MEDIAJOBS_WHISPER_PATH           whisper.cpp CLI binary (default: search PATH)
    MEDIAJOBS_WHISPER_MODEL          ggml model file for whisper.cpp
    MEDIAJOBS_STAGE_TIMEOUT          Seconds per stage, 0 for no limit (default 3600)
    MEDIAJOBS_CORS_ORIGINS           Comma-separated allowed origins
                                     (default http://localhost:5173)
"""

import os
from pathlib import Path
from typing import List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

ENV_DOWNLOADS_DIR = "MEDIAJOBS_DOWNLOADS_DIR"
ENV_DB_PATH = "MEDIAJOBS_DB_PATH"
ENV_MAX_CONCURRENT_STAGES = "MEDIAJOBS_MAX_CONCURRENT_STAGES"
ENV_YTDLP_PATH = "MEDIAJOBS_YTDLP_PATH"
ENV_FFMPEG_PATH = "MEDIAJOBS_FFMPEG_PATH"
ENV_WHISPER_PATH = "MEDIAJOBS_WHISPER_PATH"
ENV_WHISPER_MODEL = "MEDIAJOBS_WHISPER_MODEL"
ENV_STAGE_TIMEOUT = "MEDIAJOBS_STAGE_TIMEOUT"
ENV_CORS_ORIGINS = "MEDIAJOBS_CORS_ORIGINS"

DEFAULT_DOWNLOADS_DIR = Path.home() / "Downloads" / "mediajobs"
DEFAULT_DB_PATH = Path.home() / ".mediajobs" / "jobs.db"


class ConfigError(Exception):
    """Raised when a setting has an invalid value."""

    def __init__(self, variable: str, value: str, reason: str):
        self.variable = variable
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid value for {variable}={value!r}: {reason}")


class AppSettings(BaseModel):
    """Resolved, immutable application settings."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    downloads_dir: Path = DEFAULT_DOWNLOADS_DIR
    db_path: Optional[Path] = DEFAULT_DB_PATH  # None disables persistence
    max_concurrent_stages: int = Field(default=2, ge=1)
    ytdlp_path: Optional[str] = None
    ffmpeg_path: Optional[str] = None
    whisper_path: Optional[str] = None
    whisper_model: Optional[str] = None
    stage_timeout: Optional[float] = Field(default=3600.0, gt=0)  # None: no limit
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])


def _parse_int(env: Mapping[str, str], name: str, minimum: int) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigError(name, raw, "must be an integer")
    if value < minimum:
        raise ConfigError(name, raw, f"must be at least {minimum}")
    return value


def _optional_str(env: Mapping[str, str], name: str) -> Optional[str]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def load_settings(env: Optional[Mapping[str, str]] = None) -> AppSettings:
    """
    Build AppSettings from environment variables.

    Args:
        env: Mapping to read instead of os.environ (tests)

    Raises:
        ConfigError: If a variable has an invalid value
    """
    if env is None:
        env = os.environ

    values = {}

    downloads_dir = _optional_str(env, ENV_DOWNLOADS_DIR)
    if downloads_dir:
        values["downloads_dir"] = Path(downloads_dir).expanduser()

    if ENV_DB_PATH in env:
        db_path = env[ENV_DB_PATH].strip()
        values["db_path"] = Path(db_path).expanduser() if db_path else None

    max_concurrent = _parse_int(env, ENV_MAX_CONCURRENT_STAGES, minimum=1)
    if max_concurrent is not None:
        values["max_concurrent_stages"] = max_concurrent

    timeout = _parse_int(env, ENV_STAGE_TIMEOUT, minimum=0)
    if timeout is not None:
        values["stage_timeout"] = float(timeout) if timeout > 0 else None

    for field_name, variable in (
        ("ytdlp_path", ENV_YTDLP_PATH),
        ("ffmpeg_path", ENV_FFMPEG_PATH),
        ("whisper_path", ENV_WHISPER_PATH),
        ("whisper_model", ENV_WHISPER_MODEL),
    ):
        value = _optional_str(env, variable)
        if value:
            values[field_name] = value

    cors = env.get(ENV_CORS_ORIGINS)
    if cors is not None:
        values["cors_origins"] = [origin.strip() for origin in cors.split(",") if origin.strip()]

    try:
        return AppSettings(**values)
    except PydanticValidationError as e:
        raise ConfigError("settings", str(values), str(e)) from e
