"""
Capture configuration via pydantic-settings.

Loads values from a .env file with defaults suited to desktop recording.
Use ``get_settings()`` to obtain the cached singleton instance.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from meetcap.core.models import AudioQuality


class Settings(BaseSettings):
    """meetcap settings loaded from environment / .env file.

    Every field can be overridden with a ``MEETCAP_``-prefixed environment
    variable (case-insensitive), e.g. ``MEETCAP_CHUNK_INTERVAL=0.5``.

    Attributes:
        default_quality: Quality profile used when the caller does not pick one.
        chunk_interval: Seconds between encoded chunks while recording.
        preferred_encodings: MIME types tried in order when picking an encoder.
        encoding_fallback: Encoding used when no preferred one is supported.
            Set to an empty string to make that case an error instead.
    """

    model_config = SettingsConfigDict(
        env_prefix="MEETCAP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Capture ---
    default_quality: AudioQuality = AudioQuality.medium
    chunk_interval: float = 1.0  # Throughput cadence, not a UI meter rate
    max_mix_lag: float = 1.0  # Seconds a silent source may lag before it is zero-filled

    # --- Encoding ---
    preferred_encodings: list[str] = ["audio/mpeg", "audio/wav"]
    encoding_fallback: str = "audio/L16"  # Raw PCM, always available

    # --- Devices ---
    # PortAudio device index or name substring; None = platform default / auto-detect
    mic_device: int | str | None = None
    system_device: int | str | None = None

    # --- Application ---
    recordings_dir: str = "data/recordings"
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings singleton.

    The .env file is read only once; subsequent calls return the same
    ``Settings`` instance.
    """
    return Settings()
