"""
Pydantic models for server configuration and per-request extraction options.
Provides robust validation for all settings.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

# Maps each media format to its target container and the extensions that the
# tool may legitimately leave behind for it.
FORMAT_MAP = {
    "audio": {
        "name": "Audio (MP3)",
        "ext": "mp3",
        "extensions": (".mp3", ".m4a", ".opus", ".webm"),
        "color": "green",
    },
    "video": {
        "name": "Video (MP4)",
        "ext": "mp4",
        "extensions": (".mp4", ".webm", ".mkv", ".avi", ".mov"),
        "color": "cyan",
    },
}

AUDIO_QUALITIES = ("128", "192", "320")
DEFAULT_QUALITY = "192"


def get_format_info(media_format: str) -> dict:
    """Gets all information for a given media format from the central map."""
    return FORMAT_MAP.get(media_format, FORMAT_MAP["audio"])


def normalize_quality(value: object) -> str:
    """Maps any requested audio bitrate onto a supported one, defaulting to 192."""
    text = str(value).strip().lower().removesuffix("k") if value is not None else ""
    return text if text in AUDIO_QUALITIES else DEFAULT_QUALITY


class ExtractionOptions(BaseModel):
    """Options shared by every item of a batch."""

    quality: str = DEFAULT_QUALITY
    media_format: str = "audio"

    class Config:
        """Pydantic model configuration."""

        frozen = True

    @field_validator("quality", mode="before")
    @classmethod
    def validate_quality(cls, v: object) -> str:
        """Unknown bitrates fall back to the default instead of failing."""
        return normalize_quality(v)

    @field_validator("media_format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in FORMAT_MAP:
            raise ValueError('Invalid format. Must be "audio" or "video".')
        return v


class ServerConfig(BaseModel):
    """A validated configuration model for the server and extraction engine."""

    # Network
    host: str = "127.0.0.1"
    port: int = 4000

    # Tooling
    download_dir: str = "downloads"
    tool_path: str = "yt-dlp"
    ffmpeg_dir: str = ""
    default_quality: str = DEFAULT_QUALITY

    # Timeouts (seconds)
    audio_timeout: float = 600.0
    video_timeout: float = 1200.0
    metadata_timeout: float = 30.0
    playlist_timeout: float = 60.0
    settle_delay: float = 1.0

    # Cancellation
    cancel_grace: float = 5.0
    kill_grace: float = 5.0
    heuristic_cleanup: bool = True
    heuristic_max_age: float = 600.0

    # Retention and session expiry
    retention_interval: float = 600.0
    retention_max_age: float = 3600.0
    session_idle_timeout: float = 3600.0

    # Logging
    log_json: bool = False

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("Port must be between 1 and 65535.")
        return v

    @field_validator("default_quality", mode="before")
    @classmethod
    def validate_default_quality(cls, v: object) -> str:
        return normalize_quality(v)

    @field_validator("download_dir", "tool_path")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Value cannot be empty.")
        return v

    @field_validator(
        "audio_timeout",
        "video_timeout",
        "metadata_timeout",
        "playlist_timeout",
        "retention_interval",
        "retention_max_age",
        "session_idle_timeout",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts and intervals must be positive.")
        return v

    @field_validator("settle_delay", "cancel_grace", "kill_grace", "heuristic_max_age")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Delays cannot be negative.")
        return v

    @model_validator(mode="after")
    def validate_timeout_ordering(self) -> "ServerConfig":
        """Video extraction is the heavier category and never gets less time."""
        if self.video_timeout < self.audio_timeout:
            raise ValueError("video_timeout must be at least audio_timeout.")
        return self

    @property
    def download_path(self) -> Path:
        return Path(self.download_dir).expanduser()

    def timeout_for(self, media_format: str) -> float:
        """Returns the wall-clock ceiling for one extraction of the given format."""
        return self.video_timeout if media_format == "video" else self.audio_timeout

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
