"""Meeting capture: acquire sources, mix them, encode one recording.

``AudioCaptureMixer`` owns the lifecycle; every ``start()`` creates a fresh
``CaptureSession`` that holds the acquired sources, the mixing graph, the
encoder and the append-only buffer of encoded chunks. A background
``asyncio.Task`` pumps the mix into the encoder once per ``chunk_interval``.

Usage::

    mixer = AudioCaptureMixer()
    session_id = await mixer.start(CaptureConfig(use_system_audio=True))
    ...
    recording = await mixer.stop()
"""

import asyncio
import contextlib
import logging
import secrets
import time
import weakref

from meetcap.core.config import Settings, get_settings
from meetcap.core.exceptions import (
    ConfigurationError,
    FinalizationError,
    RecordingAlreadyActiveError,
    SourceUnavailableError,
)
from meetcap.core.models import (
    CaptureConfig,
    CaptureState,
    QualityProfile,
    RecordedAudio,
    RecorderState,
    SourceConstraints,
    SourceKind,
    resolve_quality,
)
from meetcap.services.audio.encoder import AudioEncoder, create_encoder
from meetcap.services.audio.mixer import MixingGraph
from meetcap.services.audio.processor import AudioProcessor
from meetcap.services.audio.sources import AudioSource, MediaSourceProvider, create_provider

logger = logging.getLogger(__name__)

CHANNELS = 2

_ACTIVE_STATES = frozenset({CaptureState.starting, CaptureState.recording, CaptureState.stopping})


def _new_session_id() -> str:
    return f"meeting_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def _is_required(kind: SourceKind, requested: list[SourceKind]) -> bool:
    """The microphone is required only when it is the sole requested source."""
    return kind is SourceKind.microphone and len(requested) == 1


class CaptureSession:
    """State and resources of one recording attempt.

    Never reused: once ``stopped`` or ``failed`` it holds no sources and
    cannot record again.
    """

    def __init__(self, session_id: str, config: CaptureConfig, profile: QualityProfile) -> None:
        self.session_id = session_id
        self.config = config
        self.profile = profile
        self.state = CaptureState.idle
        self.tracks: dict[SourceKind, AudioSource] = {}
        self.mix_buffer: list[bytes] = []
        self.chunk_sizes: list[int] = []
        self.frames_encoded = 0
        self.audio_level = 0.0
        self.result: RecordedAudio | None = None
        self.encoder: AudioEncoder | None = None
        self.graph: MixingGraph | None = None
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._pump_error: Exception | None = None

    @property
    def duration(self) -> float:
        """Seconds of mixed audio handed to the encoder."""
        return self.frames_encoded / self.profile.sample_rate

    def append_chunk(self, data: bytes) -> None:
        """Append encoded output; empty output is not a chunk."""
        if data:
            self.mix_buffer.append(data)
            self.chunk_sizes.append(len(data))

    # -- pump --------------------------------------------------------------

    def start_pump(self, interval: float) -> None:
        """Launch the background mix-and-encode loop."""
        self._task = asyncio.create_task(self._pump_loop(interval))

    async def _pump_loop(self, interval: float) -> None:
        """Encode the mix every interval until the stop signal."""
        logger.debug("Pump started for session %s", self.session_id)
        try:
            while not self._stop_event.is_set():
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except TimeoutError:
                    pass  # Interval elapsed, encode what has arrived
                self._pump_once()
        except Exception as exc:
            logger.exception("Encoding failed for session %s", self.session_id)
            self._pump_error = exc
            # Nothing more can be encoded; stop capture and free the devices now
            self.fail()

    def take_pump_error(self) -> Exception | None:
        """Return the pump's failure once, then forget it."""
        error, self._pump_error = self._pump_error, None
        return error

    def _pump_once(self, flush: bool = False) -> None:
        block = self.graph.pull(flush=flush)
        if block.shape[0] == 0:
            return
        self.audio_level = AudioProcessor.peak_level(block)
        self.frames_encoded += block.shape[0]
        self.append_chunk(self.encoder.encode(block))

    async def _stop_pump(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    # -- finalization ------------------------------------------------------

    async def finalize(self) -> RecordedAudio:
        """Flush everything through the encoder and build the recording.

        Raises:
            FinalizationError: If encoding failed while recording or the
                encoder could not flush. Sources are released either way.
        """
        try:
            await self._stop_pump()
            # Stop capture first so the flush below sees every delivered frame
            self._close_tracks()
            error = self.take_pump_error()
            if error is not None:
                raise error
            self._pump_once(flush=True)
            self.append_chunk(self.encoder.finalize())
        except Exception as exc:
            self.fail()
            raise FinalizationError(f"Failed to finalize recording: {exc}") from exc

        self.release()
        data = b"".join(self.mix_buffer)
        self.mix_buffer.clear()
        self.result = RecordedAudio(
            data=data,
            mime_type=self.encoder.mime_type,
            sample_rate=self.profile.sample_rate,
            channels=CHANNELS,
            duration=self.duration,
            session_id=self.session_id,
        )
        self.state = CaptureState.stopped
        return self.result

    # -- teardown ----------------------------------------------------------

    def _close_tracks(self) -> None:
        for kind, track in list(self.tracks.items()):
            try:
                track.close()
            except Exception:
                logger.exception("Failed to release %s for session %s", kind, self.session_id)
        self.tracks.clear()

    def release(self) -> None:
        """Close every acquired source and drop the mixing graph."""
        self._close_tracks()
        if self.graph is not None:
            self.graph.disconnect_all()

    def fail(self) -> None:
        """Release resources and end the session without a recording."""
        self.release()
        self.mix_buffer.clear()
        self.state = CaptureState.failed

    def abandon(self) -> None:
        """Tear down a session whose owner went away without ``stop()``."""
        if self.state not in _ACTIVE_STATES:
            return
        logger.warning(
            "Session %s abandoned while %s; releasing sources", self.session_id, self.state
        )
        if self._task is not None and not self._task.done():
            try:
                self._task.cancel()
            except RuntimeError:
                logger.debug("Event loop already closed for session %s", self.session_id)
        self.fail()

    async def aclose(self) -> None:
        """Abandon the session and wait for the pump task to wind down."""
        task = self._task
        self.abandon()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self._task = None


class AudioCaptureMixer:
    """Turns microphone and system audio into one encoded recording.

    One session at a time per instance; create another mixer (with its own
    devices) for parallel recordings.

    Args:
        provider: Source of live audio; defaults to local sounddevice inputs.
        settings: Configuration; defaults to ``get_settings()``.
    """

    def __init__(
        self,
        provider: MediaSourceProvider | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._provider = provider or create_provider(
            mic_device=self._settings.mic_device,
            system_device=self._settings.system_device,
        )
        self._session: CaptureSession | None = None
        self._finalizer: weakref.finalize | None = None

    @property
    def session(self) -> CaptureSession | None:
        """The current or most recent session."""
        return self._session

    @property
    def state(self) -> CaptureState:
        return self._session.state if self._session is not None else CaptureState.idle

    async def start(self, config: CaptureConfig | None = None) -> str:
        """Acquire the requested sources and begin recording.

        Returns:
            Opaque session identifier for correlation.

        Raises:
            ConfigurationError: If no source is requested.
            RecordingAlreadyActiveError: If a session is still active.
            EncodingUnsupportedError: If no output encoding can be used.
            SourceUnavailableError: If no requested source could be acquired,
                or the microphone failed when it was the only source.
        """
        config = config or CaptureConfig(quality=self._settings.default_quality)
        if not config.requested_sources:
            raise ConfigurationError()
        if self.state in _ACTIVE_STATES:
            raise RecordingAlreadyActiveError()

        profile = resolve_quality(config.quality)
        session = CaptureSession(_new_session_id(), config, profile)
        self._session = session
        session.state = CaptureState.starting
        logger.info(
            "Starting session %s (sources=%s, %d Hz, %d bps)",
            session.session_id,
            ",".join(config.requested_sources),
            profile.sample_rate,
            profile.bitrate,
        )

        self._finalizer = weakref.finalize(self, session.abandon)
        try:
            session.encoder = create_encoder(
                self._settings.preferred_encodings,
                sample_rate=profile.sample_rate,
                channels=CHANNELS,
                bitrate=profile.bitrate,
                fallback=self._settings.encoding_fallback or None,
            )
            await self._acquire_sources(session)

            session.graph = MixingGraph(
                profile.sample_rate, CHANNELS, max_lag=self._settings.max_mix_lag
            )
            self._start_tracks(session)

            session.append_chunk(session.encoder.begin())
            session.start_pump(self._settings.chunk_interval)
        except BaseException:
            logger.error("Session %s failed to start", session.session_id)
            session.fail()
            self._detach_finalizer()
            raise

        session.state = CaptureState.recording
        logger.info(
            "Recording session %s as %s with %s",
            session.session_id,
            session.encoder.mime_type,
            ", ".join(session.tracks),
        )
        return session.session_id

    async def _acquire_sources(self, session: CaptureSession) -> None:
        requested = session.config.requested_sources
        sample_rate = session.profile.sample_rate

        for kind in requested:
            if kind is SourceKind.microphone:
                constraints = SourceConstraints.for_microphone(sample_rate)
            else:
                constraints = SourceConstraints.for_system_audio(sample_rate)
            try:
                session.tracks[kind] = await self._provider.acquire(kind, constraints)
            except SourceUnavailableError as exc:
                if _is_required(kind, requested):
                    raise
                logger.warning(
                    "%s capture not available, continuing without it: %s", kind, exc.reason
                )

        if not session.tracks:
            raise SourceUnavailableError(
                ", ".join(requested), "none of the requested audio sources could be acquired"
            )

    def _start_tracks(self, session: CaptureSession) -> None:
        """Wire every acquired track into the graph and start delivery.

        A track that fails to start is dropped under the same policy as a
        failed acquisition.
        """
        requested = session.config.requested_sources
        for kind, track in list(session.tracks.items()):
            node = session.graph.connect(kind, track.sample_rate)
            try:
                track.start(node.write)
            except SourceUnavailableError as exc:
                if _is_required(kind, requested):
                    raise
                logger.warning(
                    "%s capture failed to start, continuing without it: %s", kind, exc.reason
                )
                session.graph.disconnect(kind)
                del session.tracks[kind]
                try:
                    track.close()
                except Exception:
                    logger.exception(
                        "Failed to release %s for session %s", kind, session.session_id
                    )

        if not session.tracks:
            raise SourceUnavailableError(
                ", ".join(requested), "none of the requested audio sources could be started"
            )

    async def stop(self) -> RecordedAudio | None:
        """Finish recording and return the encoded audio.

        Returns:
            The recording (possibly empty), or None if nothing was recording.

        Raises:
            FinalizationError: If the encoder could not complete the object,
                or encoding failed while recording (reported once).
        """
        session = self._session
        if session is None:
            return None
        if session.state is CaptureState.failed:
            error = session.take_pump_error()
            if error is not None:
                self._detach_finalizer()
                raise FinalizationError(f"Failed to finalize recording: {error}") from error
        if session.state is not CaptureState.recording:
            return None

        session.state = CaptureState.stopping
        try:
            recording = await session.finalize()
        finally:
            self._detach_finalizer()
        logger.info(
            "Session %s stopped: %d bytes, %.1fs, %d chunks",
            session.session_id,
            recording.size,
            recording.duration,
            len(session.chunk_sizes),
        )
        return recording

    def get_state(self) -> RecorderState:
        """Snapshot of which sources are currently contributing."""
        session = self._session
        if session is None:
            return RecorderState()
        recording = session.state is CaptureState.recording
        return RecorderState(
            is_recording=recording,
            has_microphone=SourceKind.microphone in session.tracks,
            has_system_audio=SourceKind.system_audio in session.tracks,
            state=session.state,
            session_id=session.session_id,
            duration=session.duration,
            audio_level=session.audio_level if recording else 0.0,
        )

    async def aclose(self) -> None:
        """Release any active session without producing a recording."""
        session = self._session
        if session is not None and session.state in _ACTIVE_STATES:
            await session.aclose()
        self._detach_finalizer()

    def _detach_finalizer(self) -> None:
        if self._finalizer is not None:
            self._finalizer.detach()
            self._finalizer = None

    async def __aenter__(self) -> "AudioCaptureMixer":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
