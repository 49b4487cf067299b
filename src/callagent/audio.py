"""
Audio helpers for narrow-band telephony audio.

Audio is treated as opaque mu-law 8kHz bytes end to end:
- Twilio inbound frames go straight to Deepgram (encoding=mulaw&sample_rate=8000)
- Both TTS providers are asked for mu-law 8kHz, so no transcoding is needed
- Outbound audio is only re-framed into 20ms chunks for Twilio
"""

import struct
from typing import Generator, Optional

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE = b"\xff"


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)

    Yields:
        Audio chunks of the specified size
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        # Pad the last chunk if needed
        if len(chunk) < chunk_size:
            chunk = chunk + ULAW_SILENCE * (chunk_size - len(chunk))
        yield chunk


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE) -> float:
    """Duration of mu-law audio (1 byte per sample) in milliseconds."""
    if not audio_bytes:
        return 0.0
    return len(audio_bytes) / sample_rate * 1000


def create_silence_ulaw(duration_ms: int) -> bytes:
    """
    Create silence in mu-law format.

    Args:
        duration_ms: Duration of silence in milliseconds

    Returns:
        Mu-law silence bytes
    """
    num_samples = int(TWILIO_SAMPLE_RATE * duration_ms / 1000)
    return ULAW_SILENCE * num_samples


def _find_riff_data_chunk(wav_bytes: bytes) -> Optional[bytes]:
    # RIFF header: "RIFF" <size> "WAVE", followed by <id><size><payload> chunks.
    offset = 12
    while offset + 8 <= len(wav_bytes):
        chunk_id = wav_bytes[offset:offset + 4]
        (chunk_size,) = struct.unpack("<I", wav_bytes[offset + 4:offset + 8])
        start = offset + 8
        if chunk_id == b"data":
            return wav_bytes[start:start + chunk_size]
        # Chunks are word aligned.
        offset = start + chunk_size + (chunk_size & 1)
    return None


def strip_wav_header(audio_bytes: bytes) -> bytes:
    """
    Return the raw sample payload of a WAV container, or the input unchanged.

    Providers asked for mu-law sometimes still wrap it in a RIFF header, which
    would be played as a short click. The stdlib `wave` module only reads PCM,
    so the chunk list is walked directly.
    """
    if len(audio_bytes) < 12 or audio_bytes[:4] != b"RIFF" or audio_bytes[8:12] != b"WAVE":
        return audio_bytes

    data = _find_riff_data_chunk(audio_bytes)
    if data is None:
        raise ValueError("WAV container without a data chunk")
    return data
