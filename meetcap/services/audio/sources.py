"""
Media source acquisition.

``MediaSourceProvider`` is the capability the capture mixer is given to
obtain live audio. Each acquired ``AudioSource`` exclusively owns one
hardware or virtual input until ``close()`` is called.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable

import numpy as np

from meetcap.core.models import SourceConstraints, SourceKind

BlockSink = Callable[[np.ndarray], None]


class AudioSource(ABC):
    """A live audio input held exclusively by one capture session."""

    def __init__(self, kind: SourceKind, sample_rate: int, channels: int) -> None:
        self.kind = kind
        self.sample_rate = sample_rate
        self.channels = channels

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once the underlying input has been released."""

    @abstractmethod
    def start(self, sink: BlockSink) -> None:
        """Begin delivering float32 ``(frames, channels)`` blocks to ``sink``.

        ``sink`` may be invoked from a non-event-loop thread.
        """

    @abstractmethod
    def close(self) -> None:
        """Stop delivery and release the input. Safe to call more than once."""


class MediaSourceProvider(ABC):
    """Interface for anything that can hand out live audio sources."""

    @abstractmethod
    async def acquire(self, kind: SourceKind, constraints: SourceConstraints) -> AudioSource:
        """Acquire a source of ``kind`` honouring ``constraints``.

        Raises:
            SourceUnavailableError: If the source is denied or not present.
        """


def create_provider(provider: str = "sounddevice", **kwargs) -> MediaSourceProvider:
    """Factory function to create a media source provider by name.

    Args:
        provider: Provider name ("sounddevice").
        **kwargs: Provider-specific configuration (device selection).

    Raises:
        ValueError: If provider is unknown.
    """
    if provider == "sounddevice":
        from .devices import SoundDeviceSourceProvider

        return SoundDeviceSourceProvider(**kwargs)
    raise ValueError(f"Unknown media source provider: {provider}")
