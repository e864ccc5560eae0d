"""
Audio module - capture, mixing and incremental encoding.
"""

from .capture import AudioCaptureMixer, CaptureSession
from .encoder import AudioEncoder, create_encoder
from .mixer import MixingGraph
from .processor import AudioProcessor
from .sources import AudioSource, MediaSourceProvider, create_provider

__all__ = [
    "AudioCaptureMixer",
    "AudioEncoder",
    "AudioProcessor",
    "AudioSource",
    "CaptureSession",
    "MediaSourceProvider",
    "MixingGraph",
    "create_encoder",
    "create_provider",
]
