"""
PortAudio-backed media sources via sounddevice.

System audio is read from a loopback / monitor input device, which many
machines do not have; acquiring it then fails with SourceUnavailableError.
"""

import asyncio
import logging
import platform

import sounddevice as sd

from meetcap.core.exceptions import SourceUnavailableError
from meetcap.core.models import SourceConstraints, SourceKind
from meetcap.services.audio.sources import AudioSource, BlockSink, MediaSourceProvider

logger = logging.getLogger(__name__)

# Name fragments of input devices that carry playback audio, per platform
_LOOPBACK_KEYWORDS = {
    "windows": ("stereo mix", "what u hear", "loopback", "wasapi"),
    "linux": ("monitor", "loopback"),
    "darwin": ("blackhole", "soundflower", "loopback", "aggregate", "system audio"),
}


class SoundDeviceSource(AudioSource):
    """An opened ``sd.InputStream`` feeding a sink from the PortAudio thread."""

    def __init__(self, kind: SourceKind, stream: sd.InputStream) -> None:
        super().__init__(kind, int(stream.samplerate), int(stream.channels))
        self._stream = stream
        self._sink: BlockSink | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def handle_block(self, indata, frames, time_info, status) -> None:
        """PortAudio callback: forward a copy of the block to the sink."""
        if status:
            logger.warning("%s stream status: %s", self.kind, status)
        if self._sink is not None:
            self._sink(indata.copy())

    def start(self, sink: BlockSink) -> None:
        self._sink = sink
        try:
            self._stream.start()
        except sd.PortAudioError as exc:
            raise SourceUnavailableError(self.kind, f"stream failed to start: {exc}") from exc
        logger.info("%s stream started (%d Hz, %d ch)", self.kind, self.sample_rate, self.channels)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._sink = None
        try:
            self._stream.stop()
            self._stream.close()
        except sd.PortAudioError as exc:
            logger.error("Error closing %s stream: %s", self.kind, exc)
        logger.info("%s stream released", self.kind)


def find_system_audio_device() -> int | None:
    """Find an input device that captures system playback.

    Matches platform-specific loopback names (PulseAudio monitors, Stereo
    Mix, BlackHole, ...). Returns the device index or None.
    """
    system = platform.system().lower()
    if "microsoft" in platform.uname().release.lower():
        system = "windows"
    keywords = _LOOPBACK_KEYWORDS.get(system, ())

    for index, device in enumerate(sd.query_devices()):
        name = device["name"].lower()
        if device["max_input_channels"] > 0 and any(k in name for k in keywords):
            logger.info("Found system audio device: %s (ID: %d)", device["name"], index)
            return index

    logger.warning("No system audio device found automatically")
    return None


class SoundDeviceSourceProvider(MediaSourceProvider):
    """Acquires sources from local PortAudio devices.

    Args:
        mic_device: Device index or name for the microphone; None = default input.
        system_device: Device index or name for system audio; None = auto-detect.
    """

    def __init__(
        self,
        mic_device: int | str | None = None,
        system_device: int | str | None = None,
    ) -> None:
        self.mic_device = mic_device
        self.system_device = system_device

    async def acquire(self, kind: SourceKind, constraints: SourceConstraints) -> AudioSource:
        # Device queries and stream opening block on PortAudio
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._open, kind, constraints)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; close whatever it opens
            future.add_done_callback(_release_unclaimed)
            raise

    def _resolve_device(self, kind: SourceKind) -> int | str | None:
        if kind is SourceKind.microphone:
            return self.mic_device
        device = self.system_device
        if device is None:
            device = find_system_audio_device()
        if device is None:
            raise SourceUnavailableError(kind, "no loopback or monitor input device found")
        return device

    def _open(self, kind: SourceKind, constraints: SourceConstraints) -> AudioSource:
        source: SoundDeviceSource | None = None

        def _callback(indata, frames, time_info, status):
            if source is not None:
                source.handle_block(indata, frames, time_info, status)

        try:
            device = self._resolve_device(kind)
            info = sd.query_devices(device, "input")
            channels = max(1, min(constraints.channel_count, int(info["max_input_channels"])))
            # PortAudio exposes no voice-processing switches; the host's
            # own settings for the device apply.
            logger.debug(
                "Opening %s on %s (aec=%s, ns=%s, agc=%s)",
                kind,
                info["name"],
                constraints.echo_cancellation,
                constraints.noise_suppression,
                constraints.auto_gain_control,
            )
            try:
                stream = _open_stream(device, channels, constraints.sample_rate, _callback)
            except sd.PortAudioError as exc:
                # The mixer resamples, so any rate the device accepts will do
                fallback_rate = int(info.get("default_samplerate") or 0)
                if fallback_rate <= 0 or fallback_rate == constraints.sample_rate:
                    raise
                logger.warning(
                    "%s rejected %d Hz (%s); retrying at %d Hz",
                    info["name"],
                    constraints.sample_rate,
                    exc,
                    fallback_rate,
                )
                stream = _open_stream(device, channels, fallback_rate, _callback)
        except (sd.PortAudioError, ValueError) as exc:
            raise SourceUnavailableError(kind, str(exc)) from exc

        source = SoundDeviceSource(kind, stream)
        logger.info(
            "Acquired %s: %s (%d ch, %d Hz)", kind, info["name"], channels, source.sample_rate
        )
        return source


def _open_stream(device, channels: int, sample_rate: int, callback) -> sd.InputStream:
    return sd.InputStream(
        device=device,
        channels=channels,
        samplerate=sample_rate,
        dtype="float32",
        blocksize=0,
        callback=callback,
    )


def _release_unclaimed(future: asyncio.Future) -> None:
    """Close a source whose acquisition finished after the caller gave up."""
    if future.cancelled() or future.exception() is not None:
        return
    source = future.result()
    logger.info("Releasing %s opened after acquisition was cancelled", source.kind)
    source.close()
