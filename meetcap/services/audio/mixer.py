"""Mixing graph: many live sources in, one combined stream out.

Each source writes into its own ``MixerInput`` node (possibly from an audio
thread). The capture pump pulls from the ``MixingGraph``, which sums the
nodes sample-by-sample into a single block. Relative loudness is kept as
delivered; the sum is only clipped to [-1, 1].
"""

import logging
import threading

import numpy as np

from meetcap.core.models import SourceKind
from meetcap.services.audio.processor import AudioProcessor

logger = logging.getLogger(__name__)


class MixerInput:
    """Thread-safe FIFO of conformed frames for one source."""

    def __init__(self, kind: SourceKind, processor: AudioProcessor, source_rate: int) -> None:
        self.kind = kind
        self._processor = processor
        self._source_rate = source_rate
        self._lock = threading.Lock()
        self._pending: list[np.ndarray] = []
        self._available = 0
        self.frames_received = 0

    @property
    def available(self) -> int:
        """Frames buffered and not yet pulled."""
        with self._lock:
            return self._available

    def write(self, block: np.ndarray) -> None:
        """Append a block delivered by the source."""
        data = self._processor.conform(block, self._source_rate)
        if data.shape[0] == 0:
            return
        with self._lock:
            self._pending.append(data)
            self._available += data.shape[0]
            self.frames_received += data.shape[0]

    def read(self, frames: int) -> np.ndarray:
        """Remove and return exactly ``frames`` frames, zero-padded if short."""
        channels = self._processor.channels
        with self._lock:
            if self._pending:
                buffered = np.concatenate(self._pending) if len(self._pending) > 1 else self._pending[0]
            else:
                buffered = np.zeros((0, channels), dtype=np.float32)
            taken = buffered[:frames]
            rest = buffered[frames:]
            self._pending = [rest] if rest.shape[0] else []
            self._available = rest.shape[0]

        if taken.shape[0] < frames:
            pad = np.zeros((frames - taken.shape[0], channels), dtype=np.float32)
            taken = np.concatenate([taken, pad])
        return taken


class MixingGraph:
    """Routes every connected input into one combined output stream.

    Args:
        sample_rate: Output sample rate; inputs are resampled to it.
        channels: Output channel count.
        max_lag: Seconds an input may fall behind the others before the
            gap is filled with silence instead of holding back the mix.
    """

    def __init__(self, sample_rate: int, channels: int = 2, max_lag: float = 1.0) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self._processor = AudioProcessor(sample_rate, channels)
        self._max_lag_frames = int(max_lag * sample_rate)
        self._inputs: dict[SourceKind, MixerInput] = {}

    @property
    def kinds(self) -> list[SourceKind]:
        """Kinds of the currently connected inputs."""
        return list(self._inputs)

    def connect(self, kind: SourceKind, source_rate: int) -> MixerInput:
        """Create the mixing node for one source."""
        node = MixerInput(kind, self._processor, source_rate)
        self._inputs[kind] = node
        logger.debug("Connected %s to mixer (%d Hz -> %d Hz)", kind, source_rate, self.sample_rate)
        return node

    def pull(self, flush: bool = False) -> np.ndarray:
        """Mix and return the frames every input has delivered.

        Normally only frames present on all inputs are mixed, keeping the
        sources aligned. An input lagging by more than ``max_lag`` is
        zero-filled. ``flush=True`` drains everything that remains.

        Returns:
            Float32 array of shape ``(frames, channels)``; may have 0 frames.
        """
        if not self._inputs:
            return np.zeros((0, self.channels), dtype=np.float32)

        available = [node.available for node in self._inputs.values()]
        frames = max(available) if flush else min(available)
        if not flush and max(available) - frames > self._max_lag_frames:
            logger.debug("Mixer input lagging by %d frames; zero-filling", max(available) - frames)
            frames = max(available)
        if frames == 0:
            return np.zeros((0, self.channels), dtype=np.float32)

        mixed = np.zeros((frames, self.channels), dtype=np.float32)
        for node in self._inputs.values():
            mixed += node.read(frames)
        return np.clip(mixed, -1.0, 1.0)

    def disconnect(self, kind: SourceKind) -> None:
        """Drop one input node; the remaining inputs keep mixing."""
        if self._inputs.pop(kind, None) is not None:
            logger.debug("Disconnected %s from mixer", kind)

    def disconnect_all(self) -> None:
        """Drop every input node and any frames still buffered in them."""
        self._inputs.clear()
