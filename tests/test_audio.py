"""Tests for audio packaging helpers."""

import base64
import io
import wave

from services.audio import combine_audio_chunks, join_base64_audio, pcm16_volume


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


class TestCombineAudioChunks:
    """Tests for packaging captured PCM into WAV."""

    def test_wav_header_and_frames(self):
        """Test that chunks are concatenated into a mono 16-bit WAV."""
        chunks = [b64(b"\x01\x00" * 100), b64(b"\x02\x00" * 50)]

        wav_bytes = base64.b64decode(combine_audio_chunks(chunks, sample_rate=16000))

        assert wav_bytes[:4] == b"RIFF"
        with wave.open(io.BytesIO(wav_bytes), "rb") as wav:
            assert wav.getnchannels() == 1
            assert wav.getframerate() == 16000
            assert wav.getnframes() == 150

    def test_invalid_chunks_are_skipped(self):
        """Test that undecodable chunks do not abort packaging."""
        wav_bytes = base64.b64decode(combine_audio_chunks([b64(b"\x00\x00" * 4), "%%%"], sample_rate=8000))

        with wave.open(io.BytesIO(wav_bytes), "rb") as wav:
            assert wav.getnframes() == 4


class TestHelpers:
    """Tests for reply audio joining and volume metering."""

    def test_join_base64_audio(self):
        """Test that deltas join into one payload."""
        assert base64.b64decode(join_base64_audio([b64(b"ab"), "", b64(b"c")])) == b"abc"

    def test_volume_scale(self):
        """Test silence and full-scale levels."""
        assert pcm16_volume(b"\x00\x00" * 64) == 0.0
        assert pcm16_volume(b"\xff\x7f" * 64) == 100.0
        assert pcm16_volume(b"") == 0.0
