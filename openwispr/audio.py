"""Microphone capture, clip finalization and audible cues."""

from __future__ import annotations

import asyncio
import io
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
import sounddevice as sd
import soundfile as sf

from openwispr.errors import DeviceNotFound, EmptyAudio, MicrophoneUnavailable, PermissionDenied, TooShort
from openwispr.types import EncodedClip

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from openwispr.config import AudioConfig, ToneConfig

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE = 16_000
DEFAULT_MIN_CLIP_BYTES = 100
FADE_DURATION_SECONDS = 0.008
RMS_EPSILON = 1e-12
LEVEL_SMOOTHING = 0.3
FIRST_CHANNEL_INDEX = 0
PERMISSION_HINTS = ("permission", "denied", "not authorized", "not permitted")


@dataclass(frozen=True)
class ClipFormat:
    mime_type: str
    format: str
    subtype: str


# Priority order: opus in ogg, plain ogg (vorbis), then flac.
CLIP_FORMATS = (
    ClipFormat("audio/ogg;codecs=opus", "OGG", "OPUS"),
    ClipFormat("audio/ogg", "OGG", "VORBIS"),
    ClipFormat("audio/flac", "FLAC", "PCM_16"),
)


def negotiate_clip_format() -> ClipFormat:
    """Pick the first container/codec the installed libsndfile can write."""
    formats = sf.available_formats()
    for candidate in CLIP_FORMATS[:-1]:
        if candidate.format in formats and candidate.subtype in sf.available_subtypes(candidate.format):
            return candidate
    return CLIP_FORMATS[-1]


@dataclass
class AudioDevice:
    index: int
    name: str
    is_default: bool = False

    def __str__(self) -> str:
        marker = " (DEFAULT)" if self.is_default else ""
        return f"[{self.index}] {self.name}{marker}"


def list_input_devices() -> list[AudioDevice]:
    devices = sd.query_devices()
    default_input = sd.default.device[FIRST_CHANNEL_INDEX]

    input_devices = []
    for i, dev in enumerate(devices):
        if dev["max_input_channels"] > 0:  # type: ignore[index]
            input_devices.append(
                AudioDevice(
                    index=i,
                    name=dev["name"],  # type: ignore[index]
                    is_default=(i == default_input),
                )
            )
    return input_devices


def resolve_input_device(device_id: int | None, preferred: str = "default") -> int | None:
    """Pick the configured device, a device whose name matches ``preferred``, or the default."""
    devices = list_input_devices()
    if not devices:
        raise DeviceNotFound("No audio input device found")
    if device_id is not None:
        if all(d.index != device_id for d in devices):
            raise DeviceNotFound(f"Input device {device_id} not found")
        return device_id
    if preferred and preferred != "default":
        for device in devices:
            if preferred.lower() in device.name.lower():
                return device.index
        logger.warning("Preferred microphone %r not found, using default", preferred)
    return None


def play_tone(
    config: "ToneConfig",
    frequency_hz: int,
    duration_s: float | None = None,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> None:
    duration_s = duration_s if duration_s is not None else config.duration_s
    n_samples = int(sample_rate * duration_s)
    t = np.arange(n_samples, dtype=np.float32) / sample_rate
    tone = np.sin(2.0 * np.pi * frequency_hz * t) * config.volume

    fade_samples = max(1, int(FADE_DURATION_SECONDS * sample_rate))
    if fade_samples * 2 < n_samples:
        window = np.ones(n_samples, dtype=np.float32)
        window[:fade_samples] = np.linspace(0, 1, fade_samples, dtype=np.float32)
        window[-fade_samples:] = np.linspace(1, 0, fade_samples, dtype=np.float32)
        tone *= window

    try:
        sd.play(tone.astype(np.float32), sample_rate, blocking=False)
    except sd.PortAudioError as e:
        logger.debug("Could not play tone: %s", e)


@dataclass
class RecordingSession:
    """State of one hold-to-talk gesture, owned by the capturer."""

    clip_format: ClipFormat
    sample_rate: int
    started_at: float = field(default_factory=time.time)
    chunks: list["NDArray[np.float32]"] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return time.time() - self.started_at

    def finalize(self) -> EncodedClip:
        buffer = io.BytesIO()
        with sf.SoundFile(
            buffer,
            mode="w",
            samplerate=self.sample_rate,
            channels=1,
            format=self.clip_format.format,
            subtype=self.clip_format.subtype,
        ) as sound_file:
            for chunk in self.chunks:
                sound_file.write(chunk)
        return EncodedClip(buffer.getvalue(), self.clip_format.mime_type)


class AudioCapturer:
    """Exclusive microphone capture for one session at a time.

    PortAudio delivers blocks on its own thread; each block is handed to the
    event loop and drained into the session as a chunk. ``stop`` drains the
    remaining chunks, finalizes them into one clip and always releases the
    device.
    """

    def __init__(
        self,
        audio_config: "AudioConfig",
        min_clip_bytes: int = DEFAULT_MIN_CLIP_BYTES,
        preferred_microphone: str = "default",
    ) -> None:
        self._audio_config = audio_config
        self._min_clip_bytes = min_clip_bytes
        self.preferred_microphone = preferred_microphone

        self._stream: sd.InputStream | None = None
        self._session: RecordingSession | None = None
        self._queue: asyncio.Queue["NDArray[np.float32] | None"] | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._level = 0.0

    @property
    def is_recording(self) -> bool:
        return self._session is not None

    @property
    def level(self) -> float:
        """Smoothed input level in [0, 1] for visual consumers."""
        return self._level

    @property
    def recording_duration(self) -> float:
        return self._session.duration if self._session else 0.0

    async def start(self) -> None:
        if self._session is not None:
            return

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue["NDArray[np.float32] | None"] = asyncio.Queue()

        def callback(indata: "NDArray[np.float32]", frames: int, time_info: object, status: sd.CallbackFlags) -> None:
            if status:
                logger.warning("Audio callback status: %s", status)
            block = indata[:, FIRST_CHANNEL_INDEX].astype(np.float32, copy=True)
            loop.call_soon_threadsafe(queue.put_nowait, block)

        try:
            device = resolve_input_device(self._audio_config.device_id, self.preferred_microphone)
            stream = sd.InputStream(
                samplerate=self._audio_config.sample_rate,
                channels=self._audio_config.channels,
                dtype="float32",
                blocksize=self._audio_config.block_size,
                device=device,
                callback=callback,
            )
            stream.start()
        except sd.PortAudioError as e:
            raise _microphone_error(e) from e

        self._stream = stream
        self._queue = queue
        self._session = RecordingSession(negotiate_clip_format(), self._audio_config.sample_rate)
        self._drain_task = loop.create_task(self._drain(self._session, queue))
        logger.info("Microphone open (%s)", self._session.clip_format.mime_type)

    async def stop(self) -> EncodedClip:
        """Finalize the session into a clip. Raises EmptyAudio or TooShort."""
        session = self._session
        if session is None:
            raise EmptyAudio("Not recording")

        try:
            self._close_stream()
            if self._queue is not None:
                # Queued behind blocks the audio thread already scheduled.
                asyncio.get_running_loop().call_soon(self._queue.put_nowait, None)
            if self._drain_task is not None:
                await self._drain_task

            if not session.chunks:
                raise EmptyAudio("No audio data collected")
            try:
                clip = session.finalize()
            except RuntimeError as e:
                raise EmptyAudio(f"Could not finalize clip: {e}") from e
        finally:
            self._release()

        logger.info("Captured %.2fs, %d bytes", session.duration, len(clip))
        if len(clip) < self._min_clip_bytes:
            raise TooShort(f"Clip of {len(clip)} bytes is too short")
        return clip

    async def cancel(self) -> None:
        """Drop the session without producing a clip."""
        self._close_stream()
        if self._drain_task is not None:
            self._drain_task.cancel()
        self._release()

    async def _drain(self, session: RecordingSession, queue: asyncio.Queue) -> None:
        while (block := await queue.get()) is not None:
            session.chunks.append(block)
            self._update_level(block)

    def _update_level(self, block: "NDArray[np.float32]") -> None:
        rms = float(np.sqrt(np.mean(block * block) + RMS_EPSILON))
        target = min(1.0, rms * 10.0)
        self._level += (target - self._level) * LEVEL_SMOOTHING

    def _close_stream(self) -> None:
        if self._stream:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning("Error stopping audio stream: %s", e)
            finally:
                self._stream = None

    def _release(self) -> None:
        self._session = None
        self._queue = None
        self._drain_task = None
        self._level = 0.0


def _microphone_error(error: Exception) -> MicrophoneUnavailable:
    message = str(error)
    if any(hint in message.lower() for hint in PERMISSION_HINTS):
        return PermissionDenied(message)
    if "device" in message.lower():
        return DeviceNotFound(message)
    return MicrophoneUnavailable(message)
