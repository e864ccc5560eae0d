"""Audio processing utilities for float32 sample blocks.

Converts between float32 blocks and 16-bit PCM, reshapes channel layouts,
resamples, meters levels and decodes finished recordings.
"""

import io

import numpy as np
import soundfile as sf

from meetcap.core.models import RecordedAudio


class AudioProcessor:
    """Handles sample-block conversion and analysis for one session format.

    Every block handled here is a float32 array of shape ``(frames, channels)``
    with samples in [-1.0, 1.0].
    """

    def __init__(self, sample_rate: int = 44100, channels: int = 2) -> None:
        """Initialize the audio processor.

        Args:
            sample_rate: Session sample rate in Hz.
            channels: Session channel count (2 = stereo).
        """
        self.sample_rate = sample_rate
        self.channels = channels

    def conform(self, block: np.ndarray, source_rate: int | None = None) -> np.ndarray:
        """Bring an incoming block to the session layout and rate.

        Args:
            block: 1-D (mono) or 2-D ``(frames, channels)`` samples.
            source_rate: Rate the block was captured at; resampled if it
                differs from the session rate.

        Returns:
            Float32 array of shape ``(frames, self.channels)``.
        """
        data = np.asarray(block, dtype=np.float32)
        if data.ndim == 1:
            data = data[:, np.newaxis]
        data = self.to_channels(data, self.channels)
        if source_rate and source_rate != self.sample_rate:
            data = self.resample(data, source_rate, self.sample_rate)
        return data

    @staticmethod
    def to_channels(data: np.ndarray, channels: int) -> np.ndarray:
        """Duplicate mono or down-mix surplus channels to ``channels``."""
        current = data.shape[1]
        if current == channels:
            return data
        if current == 1:
            return np.repeat(data, channels, axis=1)
        if channels == 1:
            return data.mean(axis=1, keepdims=True)
        # Keep the leading channels (e.g. front L/R of a surround device)
        if current > channels:
            return data[:, :channels]
        pad = np.repeat(data[:, -1:], channels - current, axis=1)
        return np.concatenate([data, pad], axis=1)

    @staticmethod
    def resample(data: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
        """Linear-interpolation resample of a ``(frames, channels)`` block."""
        frames = data.shape[0]
        if frames == 0 or source_rate == target_rate:
            return data
        num_samples = max(int(round(frames * target_rate / source_rate)), 1)
        indices = np.linspace(0, frames - 1, num_samples)
        positions = np.arange(frames)
        out = np.empty((num_samples, data.shape[1]), dtype=np.float32)
        for ch in range(data.shape[1]):
            out[:, ch] = np.interp(indices, positions, data[:, ch])
        return out

    @staticmethod
    def to_pcm16(data: np.ndarray, byteorder: str = "<") -> bytes:
        """Convert float32 samples to interleaved 16-bit signed PCM bytes."""
        pcm = (np.asarray(data, dtype=np.float32) * 32767).clip(-32768, 32767)
        return pcm.astype(f"{byteorder}i2").tobytes()

    def pcm_to_ndarray(self, pcm_data: bytes, byteorder: str = "<") -> np.ndarray:
        """Convert interleaved 16-bit PCM bytes back to a float32 block.

        Raises:
            ValueError: If data length is not aligned to the frame size.
        """
        frame_size = 2 * self.channels
        if len(pcm_data) % frame_size != 0:
            raise ValueError(
                f"PCM data length ({len(pcm_data)}) is not aligned to frame size ({frame_size})"
            )
        samples = np.frombuffer(pcm_data, dtype=f"{byteorder}i2").astype(np.float32) / 32768.0
        return samples.reshape(-1, self.channels)

    @staticmethod
    def peak_level(data: np.ndarray) -> float:
        """Peak absolute amplitude of a block, clamped to [0, 1]."""
        if data.size == 0:
            return 0.0
        return float(min(np.max(np.abs(data)), 1.0))

    def decode(self, recording: RecordedAudio) -> tuple[np.ndarray, int]:
        """Decode a finished recording into float32 samples.

        Raw ``audio/L16`` data carries no header, so the recording's own
        sample rate and channel count are used to interpret it.

        Returns:
            ``(samples, sample_rate)`` with samples shaped ``(frames, channels)``.
        """
        if not recording.data:
            return np.zeros((0, recording.channels), dtype=np.float32), recording.sample_rate
        if recording.extension == "pcm":
            data, sample_rate = sf.read(
                io.BytesIO(recording.data),
                dtype="float32",
                always_2d=True,
                format="RAW",
                subtype="PCM_16",
                endian="BIG",
                samplerate=recording.sample_rate,
                channels=recording.channels,
            )
        else:
            data, sample_rate = sf.read(io.BytesIO(recording.data), dtype="float32", always_2d=True)
        return data, sample_rate
