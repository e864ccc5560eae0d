"""Shared pytest fixtures for the meetcap test suite.

Provides a deterministic media source provider (per-kind failure
injection, manual block delivery) and sample audio blocks, so capture
tests never touch real audio hardware.
"""

import numpy as np
import pytest

from meetcap.core.config import Settings
from meetcap.core.exceptions import SourceUnavailableError
from meetcap.core.models import SourceConstraints, SourceKind
from meetcap.services.audio.sources import AudioSource, BlockSink, MediaSourceProvider

# ---------------------------------------------------------------------------
# Source doubles
# ---------------------------------------------------------------------------


class FakeSource(AudioSource):
    """Source whose blocks are pushed by the test via ``emit()``."""

    def __init__(
        self,
        kind: SourceKind,
        sample_rate: int,
        channels: int = 2,
        fail_on_start: bool = False,
    ) -> None:
        super().__init__(kind, sample_rate, channels)
        self.sink: BlockSink | None = None
        self.close_calls = 0
        self._closed = False
        self._fail_on_start = fail_on_start

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self, sink: BlockSink) -> None:
        if self._fail_on_start:
            raise SourceUnavailableError(self.kind, "simulated start failure")
        self.sink = sink

    def emit(self, block: np.ndarray) -> None:
        """Deliver one block as the audio backend would."""
        assert self.sink is not None, "source not started"
        self.sink(block)

    def close(self) -> None:
        self.close_calls += 1
        self._closed = True
        self.sink = None


class FakeProvider(MediaSourceProvider):
    """Provider that can simulate acquisition failure per source kind.

    Args:
        unavailable: Kinds whose ``acquire`` raises SourceUnavailableError.
        fail_on_start: Kinds that acquire fine but fail when started.
        sample_rate: Force every source to this rate instead of the requested one.
        channels: Channel count of every source (None = as requested).
    """

    def __init__(
        self,
        unavailable: tuple[SourceKind, ...] = (),
        fail_on_start: tuple[SourceKind, ...] = (),
        sample_rate: int | None = None,
        channels: int | None = None,
    ) -> None:
        self.unavailable = set(unavailable)
        self.fail_on_start = set(fail_on_start)
        self.sample_rate = sample_rate
        self.channels = channels
        self.requests: list[tuple[SourceKind, SourceConstraints]] = []
        self.acquired: list[FakeSource] = []

    async def acquire(self, kind: SourceKind, constraints: SourceConstraints) -> AudioSource:
        self.requests.append((kind, constraints))
        if kind in self.unavailable:
            raise SourceUnavailableError(kind, "simulated failure")
        source = FakeSource(
            kind,
            self.sample_rate or constraints.sample_rate,
            self.channels or constraints.channel_count,
            fail_on_start=kind in self.fail_on_start,
        )
        self.acquired.append(source)
        return source

    def source(self, kind: SourceKind) -> FakeSource:
        """Return the most recently acquired source of ``kind``."""
        return [s for s in self.acquired if s.kind is kind][-1]


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Settings with raw PCM output and a pump that never ticks on its own.

    Everything delivered is encoded by the flush in ``stop()``, which keeps
    byte-level assertions deterministic.
    """
    return Settings(
        _env_file=None,
        chunk_interval=60.0,
        preferred_encodings=["audio/L16"],
        encoding_fallback="audio/L16",
    )


@pytest.fixture
def provider():
    """A provider on which every source is available."""
    return FakeProvider()


# ---------------------------------------------------------------------------
# Audio Fixtures
# ---------------------------------------------------------------------------


def sine_block(
    frames: int,
    sample_rate: int = 16000,
    channels: int = 2,
    frequency: float = 440.0,
    amplitude: float = 0.5,
) -> np.ndarray:
    """Float32 ``(frames, channels)`` sine wave block."""
    t = np.arange(frames) / sample_rate
    mono = (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)
    return np.repeat(mono[:, np.newaxis], channels, axis=1)


@pytest.fixture
def one_second_block():
    """1 second of 440 Hz stereo sine at 16 kHz."""
    return sine_block(16000)


@pytest.fixture
def make_block():
    """Factory fixture for sine blocks of arbitrary length / format."""
    return sine_block


@pytest.fixture
def make_provider():
    """Factory fixture for providers with injected failures."""
    return FakeProvider
