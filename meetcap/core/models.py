"""
Pydantic v2 models shared by the capture services.

Quality: AudioQuality, QualityProfile and the fixed lookup table
Sources: SourceKind, SourceConstraints, CaptureConfig
Session: CaptureState, RecorderState, RecordedAudio
"""

import time
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------


class AudioQuality(StrEnum):
    """Named quality levels a caller can request."""

    low = "low"
    medium = "medium"
    high = "high"


class QualityProfile(BaseModel):
    """Concrete sample rate and target bitrate for one quality level."""

    model_config = ConfigDict(frozen=True)

    sample_rate: int
    bitrate: int


QUALITY_PROFILES: dict[AudioQuality, QualityProfile] = {
    AudioQuality.low: QualityProfile(sample_rate=16000, bitrate=64000),
    AudioQuality.medium: QualityProfile(sample_rate=44100, bitrate=128000),
    AudioQuality.high: QualityProfile(sample_rate=48000, bitrate=192000),
}


def resolve_quality(quality: AudioQuality | str) -> QualityProfile:
    """Map a quality name to its fixed sample rate / bitrate profile."""
    return QUALITY_PROFILES[AudioQuality(quality)]


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class SourceKind(StrEnum):
    """The two live inputs a capture session can mix."""

    microphone = "microphone"
    system_audio = "system_audio"


class SourceConstraints(BaseModel):
    """Capability request passed to a media source provider."""

    model_config = ConfigDict(frozen=True)

    sample_rate: int
    channel_count: int = 2
    echo_cancellation: bool = False
    noise_suppression: bool = False
    auto_gain_control: bool = False

    @classmethod
    def for_microphone(cls, sample_rate: int) -> "SourceConstraints":
        """Voice processing on: the mic should sound clean to a listener."""
        return cls(
            sample_rate=sample_rate,
            echo_cancellation=True,
            noise_suppression=True,
            auto_gain_control=True,
        )

    @classmethod
    def for_system_audio(cls, sample_rate: int) -> "SourceConstraints":
        """Voice processing off: playback audio is passed through unaltered."""
        return cls(sample_rate=sample_rate)


class CaptureConfig(BaseModel):
    """Arguments to ``AudioCaptureMixer.start``."""

    use_microphone: bool = True
    use_system_audio: bool = False
    quality: AudioQuality = AudioQuality.medium

    @property
    def requested_sources(self) -> list[SourceKind]:
        """Requested kinds in acquisition order (microphone first)."""
        kinds = []
        if self.use_microphone:
            kinds.append(SourceKind.microphone)
        if self.use_system_audio:
            kinds.append(SourceKind.system_audio)
        return kinds


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class CaptureState(StrEnum):
    """Lifecycle states of a single capture session."""

    idle = "idle"
    starting = "starting"
    recording = "recording"
    stopping = "stopping"
    stopped = "stopped"
    failed = "failed"


class RecorderState(BaseModel):
    """Read-only snapshot returned by ``AudioCaptureMixer.get_state``."""

    model_config = ConfigDict(frozen=True)

    is_recording: bool = False
    has_microphone: bool = False
    has_system_audio: bool = False
    state: CaptureState = CaptureState.idle
    session_id: str | None = None
    duration: float = 0.0  # Seconds of audio encoded so far
    audio_level: float = 0.0  # Peak of the latest mixed block, 0..1


_EXTENSIONS = {
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/L16": "pcm",
}


class RecordedAudio(BaseModel):
    """A finished recording, ready for upload or transcription."""

    model_config = ConfigDict(frozen=True)

    data: bytes = b""
    mime_type: str
    sample_rate: int
    channels: int = 2
    duration: float = 0.0
    session_id: str | None = None
    created_at: float = Field(default_factory=time.time)

    @property
    def size(self) -> int:
        """Size of the encoded object in bytes."""
        return len(self.data)

    @property
    def extension(self) -> str:
        """File extension matching the MIME type (parameters ignored)."""
        base = self.mime_type.split(";", 1)[0].strip()
        return _EXTENSIONS.get(base, "bin")

    def file_name(self, recording_type: str = "meeting") -> str:
        """Build a unique upload name such as ``meeting_1718000000000.mp3``."""
        return f"{recording_type}_{int(self.created_at * 1000)}.{self.extension}"

    def save(self, path: str | Path) -> str:
        """Write the encoded bytes to ``path``.

        If ``path`` is an existing directory, ``file_name()`` is appended.

        Returns:
            The absolute path to the saved file.

        Raises:
            ValueError: If the recording is empty.
        """
        if not self.data:
            raise ValueError("Cannot save an empty recording")
        target = Path(path)
        if target.is_dir():
            target = target / self.file_name()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.data)
        return str(target.resolve())
