"""
Incremental audio encoders.

An encoder turns successive mixed float32 blocks into encoded bytes that can
simply be concatenated: ``begin() + encode(b1) + encode(b2) + ... + finalize()``
is always a complete object of ``mime_type``.

``select_encoder()`` walks a MIME preference list and falls back to raw PCM,
which every runtime can produce.
"""

import logging
import struct
from abc import ABC, abstractmethod

import lameenc
import numpy as np

from meetcap.core.exceptions import EncodingUnsupportedError
from meetcap.services.audio.processor import AudioProcessor

logger = logging.getLogger(__name__)

# Sample rates accepted by LAME (MPEG-1, MPEG-2 and MPEG-2.5 layer III)
_MP3_SAMPLE_RATES = frozenset({8000, 11025, 12000, 16000, 22050, 24000, 32000, 44100, 48000})

# RIFF/data sizes for a WAV whose length is unknown when the header is written
_WAV_UNKNOWN_SIZE = 0xFFFFFFFF


class AudioEncoder(ABC):
    """Interface that every incremental encoder must implement."""

    #: Base MIME type this encoder produces; parameters may be appended.
    base_mime_type: str = ""

    def __init__(self, sample_rate: int, channels: int = 2, bitrate: int = 128000) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.bitrate = bitrate

    @property
    def mime_type(self) -> str:
        """MIME type string describing the encoded output."""
        return self.base_mime_type

    @classmethod
    def is_supported(cls, sample_rate: int, channels: int) -> bool:
        """Whether this encoder can produce output for the given format."""
        return sample_rate > 0 and channels > 0

    def begin(self) -> bytes:
        """Bytes that must precede the first encoded block (container header)."""
        return b""

    @abstractmethod
    def encode(self, block: np.ndarray) -> bytes:
        """Encode one ``(frames, channels)`` float32 block.

        May return ``b""`` when the codec is still buffering.
        """

    def finalize(self) -> bytes:
        """Flush any buffered audio. Called exactly once, after the last block."""
        return b""


class PcmEncoder(AudioEncoder):
    """Raw 16-bit big-endian PCM (RFC 2586 ``audio/L16``)."""

    base_mime_type = "audio/L16"

    @property
    def mime_type(self) -> str:
        return f"audio/L16;rate={self.sample_rate};channels={self.channels}"

    def encode(self, block: np.ndarray) -> bytes:
        return AudioProcessor.to_pcm16(block, byteorder=">")


class WavEncoder(AudioEncoder):
    """Streaming RIFF/WAVE with 16-bit little-endian PCM.

    The header is emitted before any audio, so its size fields carry the
    "unknown length" marker; readers take the length from the data itself.
    """

    base_mime_type = "audio/wav"

    def begin(self) -> bytes:
        block_align = self.channels * 2
        return struct.pack(
            "<4sI4s4sIHHIIHH4sI",
            b"RIFF",
            _WAV_UNKNOWN_SIZE,
            b"WAVE",
            b"fmt ",
            16,
            1,  # PCM
            self.channels,
            self.sample_rate,
            self.sample_rate * block_align,
            block_align,
            16,
            b"data",
            _WAV_UNKNOWN_SIZE,
        )

    def encode(self, block: np.ndarray) -> bytes:
        return AudioProcessor.to_pcm16(block, byteorder="<")


class Mp3Encoder(AudioEncoder):
    """MPEG layer III via LAME; the only encoder that honours ``bitrate``."""

    base_mime_type = "audio/mpeg"

    def __init__(self, sample_rate: int, channels: int = 2, bitrate: int = 128000) -> None:
        super().__init__(sample_rate, channels, bitrate)
        self._lame = lameenc.Encoder()
        self._lame.set_bit_rate(bitrate // 1000)
        self._lame.set_in_sample_rate(sample_rate)
        self._lame.set_channels(channels)
        self._lame.set_quality(2)

    @classmethod
    def is_supported(cls, sample_rate: int, channels: int) -> bool:
        return sample_rate in _MP3_SAMPLE_RATES and channels in (1, 2)

    def encode(self, block: np.ndarray) -> bytes:
        return bytes(self._lame.encode(AudioProcessor.to_pcm16(block, byteorder="<")))

    def finalize(self) -> bytes:
        return bytes(self._lame.flush())


_ENCODERS: dict[str, type[AudioEncoder]] = {
    Mp3Encoder.base_mime_type: Mp3Encoder,
    WavEncoder.base_mime_type: WavEncoder,
    PcmEncoder.base_mime_type: PcmEncoder,
}


def _base_type(mime_type: str) -> str:
    return mime_type.split(";", 1)[0].strip()


def select_encoder(
    preferred: list[str],
    sample_rate: int,
    channels: int = 2,
    fallback: str | None = PcmEncoder.base_mime_type,
) -> type[AudioEncoder]:
    """Pick the first supported encoder from ``preferred``, else ``fallback``.

    Args:
        preferred: MIME types in preference order.
        sample_rate: Session sample rate in Hz.
        channels: Session channel count.
        fallback: Encoding to use when nothing preferred is supported;
            ``None`` or ``""`` disables the fallback.

    Returns:
        The encoder class to instantiate.

    Raises:
        EncodingUnsupportedError: If neither a preferred encoding nor the
            fallback can be used.
    """
    attempted: list[str] = []
    candidates = list(preferred)
    if fallback:
        candidates.append(fallback)

    for mime_type in candidates:
        attempted.append(mime_type)
        encoder_cls = _ENCODERS.get(_base_type(mime_type))
        if encoder_cls is None:
            logger.debug("No encoder registered for %s", mime_type)
            continue
        if encoder_cls.is_supported(sample_rate, channels):
            if mime_type not in preferred:
                logger.info(
                    "No preferred encoding supported at %d Hz / %d ch; falling back to %s",
                    sample_rate,
                    channels,
                    mime_type,
                )
            return encoder_cls
        logger.debug("%s unsupported at %d Hz / %d ch", mime_type, sample_rate, channels)

    raise EncodingUnsupportedError(attempted)


def create_encoder(
    preferred: list[str],
    sample_rate: int,
    channels: int = 2,
    bitrate: int = 128000,
    fallback: str | None = PcmEncoder.base_mime_type,
) -> AudioEncoder:
    """Factory: select and instantiate an encoder for the session format."""
    encoder_cls = select_encoder(preferred, sample_rate, channels, fallback=fallback)
    return encoder_cls(sample_rate=sample_rate, channels=channels, bitrate=bitrate)
