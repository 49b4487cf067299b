"""
Tests for audio utilities.
"""

import struct

import pytest

from src.callagent.audio import (
    TWILIO_FRAME_SIZE,
    chunk_audio,
    create_silence_ulaw,
    get_audio_duration_ms,
    strip_wav_header,
)


def make_wav(payload: bytes, extra_chunk: bytes = b"") -> bytes:
    fmt = struct.pack("<HHIIHH", 7, 1, 8000, 8000, 1, 8)  # WAVE_FORMAT_MULAW
    body = b"WAVE" + b"fmt " + struct.pack("<I", len(fmt)) + fmt
    if extra_chunk:
        body += b"LIST" + struct.pack("<I", len(extra_chunk)) + extra_chunk + (b"\x00" if len(extra_chunk) & 1 else b"")
    body += b"data" + struct.pack("<I", len(payload)) + payload
    return b"RIFF" + struct.pack("<I", len(body)) + body


class TestChunking:
    def test_chunk_exact_multiple(self):
        chunks = list(chunk_audio(b"\x00" * 320))

        assert len(chunks) == 2
        assert all(len(c) == TWILIO_FRAME_SIZE for c in chunks)

    def test_last_chunk_padded_with_silence(self):
        chunks = list(chunk_audio(b"\x00" * 200))

        assert len(chunks) == 2
        assert chunks[1] == b"\x00" * 40 + b"\xff" * 120

    def test_empty_audio(self):
        assert list(chunk_audio(b"")) == []


class TestDurationAndSilence:
    def test_duration(self):
        assert get_audio_duration_ms(b"\xff" * 160) == 20.0
        assert get_audio_duration_ms(b"") == 0.0

    def test_silence(self):
        silence = create_silence_ulaw(100)

        assert len(silence) == 800
        assert set(silence) == {0xFF}


class TestStripWavHeader:
    def test_raw_audio_unchanged(self):
        assert strip_wav_header(b"\x7f" * 10) == b"\x7f" * 10

    def test_data_chunk_extracted(self):
        assert strip_wav_header(make_wav(b"\x01\x02\x03")) == b"\x01\x02\x03"

    def test_odd_sized_chunks_skipped(self):
        assert strip_wav_header(make_wav(b"\x05" * 4, extra_chunk=b"abc")) == b"\x05" * 4

    def test_missing_data_chunk(self):
        wav = b"RIFF" + struct.pack("<I", 4) + b"WAVE"
        with pytest.raises(ValueError):
            strip_wav_header(wav)
