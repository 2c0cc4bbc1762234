"""Clip decoding and canonical WAV encoding for the transcription service."""

from __future__ import annotations

import asyncio
import io
import logging
from typing import TYPE_CHECKING

import numpy as np
from scipy.io.wavfile import write as wav_write

from openwispr.errors import AudioDecodeError
from openwispr.types import EncodedClip

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

WAV_SAMPLE_RATE = 16000
WAV_MIME_TYPE = "audio/wav"
WAV_HEADER_BYTES = 44
FFMPEG_TIMEOUT_SECONDS = 30
MONO_CHANNELS = 1
INT16_MAX = 32767
INT16_MIN_MAGNITUDE = 32768


def pcm16_from_float(samples: "NDArray[np.floating]") -> "NDArray[np.int16]":
    """Convert float samples to int16, downmixing to mono.

    Samples are clamped to [-1, 1]; negative values scale by 32768 and
    non-negative values by 32767 so that neither end overflows.
    """
    data = np.asarray(samples, dtype=np.float64)
    if data.ndim > 1:
        data = data.mean(axis=1)
    data = np.clip(data, -1.0, 1.0)
    scaled = np.where(data < 0, data * INT16_MIN_MAGNITUDE, data * INT16_MAX)
    return scaled.astype(np.int16)


def encode_wav(samples: "NDArray[np.floating]", sample_rate: int = WAV_SAMPLE_RATE) -> bytes:
    """RIFF/WAVE, PCM, mono, 16-bit. Output is ``44 + 2 * len(samples)`` bytes."""
    buffer = io.BytesIO()
    wav_write(buffer, sample_rate, pcm16_from_float(samples))
    return buffer.getvalue()


async def decode_clip(
    clip: EncodedClip,
    sample_rate: int = WAV_SAMPLE_RATE,
    timeout_s: float = FFMPEG_TIMEOUT_SECONDS,
) -> "NDArray[np.float32]":
    """Decode a clip to mono float32 PCM at ``sample_rate`` with ffmpeg."""
    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel", "error",
        "-i", "pipe:0",
        "-ar", str(sample_rate),
        "-ac", str(MONO_CHANNELS),
        "-f", "f32le",
        "pipe:1",
    ]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise AudioDecodeError("ffmpeg not found") from e
    except OSError as e:
        raise AudioDecodeError(f"cannot start ffmpeg: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(clip.data), timeout_s)
    except asyncio.TimeoutError as e:
        raise AudioDecodeError("ffmpeg timed out") from e
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    if proc.returncode != 0:
        message = stderr.decode(errors="replace").strip()
        logger.error("ffmpeg error: %s", message)
        raise AudioDecodeError(f"Could not decode {clip.mime_type}")

    return np.frombuffer(stdout, dtype="<f4")


class WavEncoder:
    """Turns a finalized clip into the WAV buffer sent for transcription."""

    def __init__(self, sample_rate: int = WAV_SAMPLE_RATE) -> None:
        self._sample_rate = sample_rate

    async def encode(self, clip: EncodedClip) -> EncodedClip:
        samples = await decode_clip(clip, self._sample_rate)
        logger.info(
            "Decoded %d samples (%.2fs) from %s",
            len(samples),
            len(samples) / self._sample_rate,
            clip.mime_type,
        )
        return EncodedClip(encode_wav(samples, self._sample_rate), WAV_MIME_TYPE)
