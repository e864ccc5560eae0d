"""Tests for the sounddevice-backed source provider.

PortAudio is mocked throughout; the module is skipped where the PortAudio
shared library itself is missing.
"""

import asyncio
import threading
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

try:
    import sounddevice as sd
except OSError:
    pytest.skip("PortAudio library not available", allow_module_level=True)

from meetcap.core.exceptions import SourceUnavailableError
from meetcap.core.models import SourceConstraints, SourceKind
from meetcap.services.audio.devices import (
    SoundDeviceSource,
    SoundDeviceSourceProvider,
    find_system_audio_device,
)
from meetcap.services.audio.sources import create_provider

_DEVICES = [
    {
        "name": "Built-in Microphone",
        "max_input_channels": 1,
        "max_output_channels": 0,
        "default_samplerate": 44100.0,
    },
    {
        "name": "Speakers",
        "max_input_channels": 0,
        "max_output_channels": 2,
        "default_samplerate": 48000.0,
    },
    {
        "name": "Monitor of Built-in Audio",
        "max_input_channels": 2,
        "max_output_channels": 0,
        "default_samplerate": 44100.0,
    },
]


def _query_devices(device=None, kind=None):
    if device is None:
        return _DEVICES
    return _DEVICES[device] if isinstance(device, int) else _DEVICES[0]


@pytest.fixture
def linux():
    with (
        patch("meetcap.services.audio.devices.platform.system", return_value="Linux"),
        patch(
            "meetcap.services.audio.devices.platform.uname",
            return_value=MagicMock(release="6.1.0-generic"),
        ),
    ):
        yield


class TestFindSystemAudioDevice:
    def test_finds_pulse_monitor(self, linux):
        with patch("meetcap.services.audio.devices.sd.query_devices", side_effect=_query_devices):
            assert find_system_audio_device() == 2

    def test_none_when_no_loopback(self, linux):
        devices = _DEVICES[:2]
        with patch("meetcap.services.audio.devices.sd.query_devices", return_value=devices):
            assert find_system_audio_device() is None


class TestSoundDeviceSourceProvider:
    """Verify stream opening and failure mapping."""

    async def test_acquire_microphone(self):
        stream = MagicMock(samplerate=16000, channels=1)
        with (
            patch("meetcap.services.audio.devices.sd.query_devices", side_effect=_query_devices),
            patch("meetcap.services.audio.devices.sd.InputStream", return_value=stream) as ctor,
        ):
            provider = SoundDeviceSourceProvider(mic_device=0)
            source = await provider.acquire(
                SourceKind.microphone, SourceConstraints.for_microphone(16000)
            )

        kwargs = ctor.call_args.kwargs
        assert kwargs["device"] == 0
        assert kwargs["channels"] == 1  # clamped to the device's inputs
        assert kwargs["samplerate"] == 16000
        assert kwargs["dtype"] == "float32"
        assert source.kind is SourceKind.microphone
        assert source.channels == 1

    async def test_portaudio_error_maps_to_unavailable(self):
        with (
            patch("meetcap.services.audio.devices.sd.query_devices", side_effect=_query_devices),
            patch(
                "meetcap.services.audio.devices.sd.InputStream",
                side_effect=sd.PortAudioError("Invalid sample rate"),
            ),
        ):
            provider = SoundDeviceSourceProvider(mic_device=0)
            with pytest.raises(SourceUnavailableError, match="Invalid sample rate"):
                await provider.acquire(
                    SourceKind.microphone, SourceConstraints.for_microphone(48000)
                )

    async def test_system_audio_without_loopback(self, linux):
        with patch("meetcap.services.audio.devices.sd.query_devices", return_value=_DEVICES[:2]):
            provider = SoundDeviceSourceProvider()
            with pytest.raises(SourceUnavailableError) as exc_info:
                await provider.acquire(
                    SourceKind.system_audio, SourceConstraints.for_system_audio(48000)
                )
        assert exc_info.value.kind == SourceKind.system_audio

    async def test_device_lookup_error_maps_to_unavailable(self, linux):
        """A PortAudio error while searching for loopback is a source failure."""
        with patch(
            "meetcap.services.audio.devices.sd.query_devices",
            side_effect=sd.PortAudioError("Error querying host API"),
        ):
            provider = SoundDeviceSourceProvider()
            with pytest.raises(SourceUnavailableError, match="Error querying host API") as exc_info:
                await provider.acquire(
                    SourceKind.system_audio, SourceConstraints.for_system_audio(48000)
                )
        assert exc_info.value.kind == SourceKind.system_audio

    async def test_falls_back_to_device_default_rate(self):
        """A rejected session rate is retried at the device's default rate."""
        stream = MagicMock(samplerate=44100, channels=1)
        with (
            patch("meetcap.services.audio.devices.sd.query_devices", side_effect=_query_devices),
            patch(
                "meetcap.services.audio.devices.sd.InputStream",
                side_effect=[sd.PortAudioError("Invalid sample rate"), stream],
            ) as ctor,
        ):
            provider = SoundDeviceSourceProvider(mic_device=0)
            source = await provider.acquire(
                SourceKind.microphone, SourceConstraints.for_microphone(16000)
            )

        rates = [call.kwargs["samplerate"] for call in ctor.call_args_list]
        assert rates == [16000, 44100]
        assert source.sample_rate == 44100

    async def test_cancelled_acquire_releases_late_source(self):
        """A stream that finishes opening after the caller was cancelled is closed."""
        opening = threading.Event()
        proceed = threading.Event()
        late_source = MagicMock(kind=SourceKind.microphone)

        def slow_open(kind, constraints):
            opening.set()
            proceed.wait(timeout=5)
            return late_source

        provider = SoundDeviceSourceProvider(mic_device=0)
        with patch.object(provider, "_open", side_effect=slow_open):
            task = asyncio.create_task(
                provider.acquire(SourceKind.microphone, SourceConstraints.for_microphone(16000))
            )
            await asyncio.to_thread(opening.wait, 5)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            late_source.close.assert_not_called()
            proceed.set()
            for _ in range(100):
                if late_source.close.called:
                    break
                await asyncio.sleep(0.01)

        late_source.close.assert_called_once()


class TestSoundDeviceSource:
    def test_callback_forwards_copies(self):
        stream = MagicMock(samplerate=16000, channels=2)
        source = SoundDeviceSource(SourceKind.microphone, stream)
        received = []
        source.start(received.append)

        block = np.ones((4, 2), dtype=np.float32)
        source.handle_block(block, 4, None, None)
        block[:] = 0

        assert len(received) == 1
        assert np.all(received[0] == 1.0)
        stream.start.assert_called_once()

    def test_close_is_idempotent(self):
        stream = MagicMock(samplerate=16000, channels=2)
        source = SoundDeviceSource(SourceKind.microphone, stream)
        source.close()
        source.close()
        assert source.closed is True
        stream.close.assert_called_once()


class TestCreateProvider:
    def test_sounddevice(self):
        assert isinstance(create_provider("sounddevice"), SoundDeviceSourceProvider)

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown media source provider"):
            create_provider("webrtc")
