#!/usr/bin/env python3
"""
meetcap meeting recorder

Records microphone and/or system audio for a fixed duration and saves the
mixed recording to disk.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import sounddevice as sd
import soundfile as sf

from meetcap.core.config import get_settings
from meetcap.core.exceptions import MeetCapError
from meetcap.core.models import AudioQuality, CaptureConfig
from meetcap.services.audio import AudioCaptureMixer, AudioProcessor
from meetcap.services.audio.devices import find_system_audio_device


def print_devices():
    """Print input devices and the auto-detected system audio device."""
    print("\nInput devices:")
    print("-" * 60)
    for index, device in enumerate(sd.query_devices()):
        if device["max_input_channels"] > 0:
            print(f"  [{index:2d}] {device['name']} ({device['max_input_channels']} ch)")
    print("-" * 60)
    system_device = find_system_audio_device()
    if system_device is not None:
        print(f"\nAuto-detected system audio: {system_device}\n")
    else:
        print("\nNo system audio device found\n")


async def record(config: CaptureConfig, seconds: float, output: Path, recording_type: str) -> bool:
    """Record for ``seconds`` and save the result under ``output``."""
    async with AudioCaptureMixer() as mixer:
        try:
            session_id = await mixer.start(config)
        except MeetCapError as e:
            print(f"\n✗ Could not start recording: {e.detail}")
            return False

        state = mixer.get_state()
        print(f"\nRecording {session_id}")
        print(f"  Microphone:   {'yes' if state.has_microphone else 'no'}")
        print(f"  System audio: {'yes' if state.has_system_audio else 'no'}")
        print(f"  Duration:     {seconds:.0f}s (Ctrl+C to stop early)\n")

        try:
            elapsed = 0.0
            while elapsed < seconds:
                await asyncio.sleep(1.0)
                elapsed += 1.0
                state = mixer.get_state()
                bar = "#" * int(state.audio_level * 30)
                print(f"\r  {state.duration:6.1f}s  [{bar:<30}]", end="", flush=True)
        except asyncio.CancelledError:
            print("\n  Stopping early...")

        try:
            recording = await mixer.stop()
        except MeetCapError as e:
            print(f"\n✗ Recording failed: {e.detail}")
            return False

    if recording is None or recording.size == 0:
        print("\n⚠ Nothing was recorded")
        return False

    output.mkdir(parents=True, exist_ok=True)
    path = recording.save(output / recording.file_name(recording_type))
    print(f"\n\n✓ Saved {recording.size} bytes ({recording.mime_type}) to {path}")

    # Read the file back to confirm the encoder produced playable audio
    processor = AudioProcessor(recording.sample_rate, recording.channels)
    try:
        samples, sample_rate = processor.decode(recording)
    except sf.LibsndfileError as e:
        print(f"⚠ Saved file could not be decoded: {e}")
        return False
    print(f"  Decoded {samples.shape[0] / sample_rate:.1f}s at {sample_rate} Hz\n")
    return True


def main():
    """Main entry point."""
    settings = get_settings()

    parser = argparse.ArgumentParser(
        description="Record a meeting with meetcap",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--seconds",
        type=float,
        default=60.0,
        help="Recording length in seconds (default: 60)",
    )

    parser.add_argument(
        "--quality",
        type=str,
        default=str(settings.default_quality),
        choices=[q.value for q in AudioQuality],
        help=f"Audio quality (default: {settings.default_quality})",
    )

    parser.add_argument(
        "--no-mic",
        action="store_true",
        help="Do not record the microphone",
    )

    parser.add_argument(
        "--system-audio",
        action="store_true",
        help="Also record system playback audio",
    )

    parser.add_argument(
        "--type",
        type=str,
        default="meeting",
        choices=["meeting", "phone_call", "interview", "voice_note"],
        help="Recording type used in the file name (default: meeting)",
    )

    parser.add_argument(
        "--output",
        type=Path,
        default=Path(settings.recordings_dir),
        help=f"Output directory (default: {settings.recordings_dir})",
    )

    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List audio input devices and exit",
    )

    args = parser.parse_args()
    logging.basicConfig(level=settings.log_level)

    if args.list_devices:
        print_devices()
        return

    config = CaptureConfig(
        use_microphone=not args.no_mic,
        use_system_audio=args.system_audio,
        quality=AudioQuality(args.quality),
    )
    if not config.requested_sources:
        print("Error: nothing to record (use --system-audio with --no-mic)")
        sys.exit(2)

    try:
        success = asyncio.run(record(config, args.seconds, args.output, args.type))
    except KeyboardInterrupt:
        success = False

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
