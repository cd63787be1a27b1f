"""
Audio packaging helpers

Captured microphone audio arrives as base64 PCM16 frames; the model wants
one base64 WAV file per turn. Model replies stream back as base64 frames
that are joined into one payload at the end of a round.
"""
import base64
import binascii
import io
import wave
from typing import Iterable, List, Optional

import numpy as np

from core.config import settings
from core.logger import setup_logger

logger = setup_logger(__name__)

# Speech rarely exceeds a quarter of full scale
VOLUME_GAIN = 4.0


def decode_base64_chunks(chunks: Iterable[str]) -> List[bytes]:
    """Decode base64 chunks, skipping (and logging) any that are not valid base64"""
    decoded = []
    for index, chunk in enumerate(chunks):
        if not chunk:
            continue
        if chunk.startswith("data:"):
            chunk = chunk.split(",", 1)[-1]
        try:
            decoded.append(base64.b64decode(chunk, validate=True))
        except (binascii.Error, ValueError):
            logger.warning(f"Skipping invalid base64 audio chunk #{index}")
    return decoded


def pcm16_to_wav(pcm: bytes, sample_rate: Optional[int] = None, channels: int = 1) -> bytes:
    """Wrap raw little-endian PCM16 samples in a WAV container"""
    sample_rate = sample_rate or settings.AUDIO_SAMPLE_RATE
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return buffer.getvalue()


def combine_audio_chunks(chunks: Iterable[str], sample_rate: Optional[int] = None) -> str:
    """Concatenate base64 PCM16 chunks into a single base64 WAV file"""
    pcm = b"".join(decode_base64_chunks(chunks))
    wav_bytes = pcm16_to_wav(pcm, sample_rate)
    logger.debug(f"Packaged {len(pcm)} bytes of PCM into {len(wav_bytes)} byte WAV")
    return base64.b64encode(wav_bytes).decode("ascii")


def join_base64_audio(chunks: Iterable[str]) -> str:
    """Join streamed base64 audio deltas into one base64 payload"""
    return base64.b64encode(b"".join(decode_base64_chunks(chunks))).decode("ascii")


def pcm16_volume(pcm: bytes) -> float:
    """RMS level of a PCM16 frame on a 0-100 scale"""
    if len(pcm) < 2:
        return 0.0
    samples = np.frombuffer(pcm[: len(pcm) - len(pcm) % 2], dtype=np.int16).astype(np.float32)
    rms = float(np.sqrt(np.mean(samples ** 2))) if samples.size else 0.0
    return min(100.0, rms / 32768.0 * 100.0 * VOLUME_GAIN)
