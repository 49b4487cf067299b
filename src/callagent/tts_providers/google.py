from __future__ import annotations

import base64
import binascii
import html
import re
import time
from typing import Any, Optional

import httpx
import structlog

from src.callagent.audio import TWILIO_SAMPLE_RATE, strip_wav_header
from src.callagent.collaborators import ProviderError, ProviderTimeout, SpeechSynthesizer
from src.callagent.config import get_config

logger = structlog.get_logger(__name__)

GOOGLE_TTS_URL = "https://texttospeech.googleapis.com/v1/text:synthesize"

_SHORT_PAUSE_RE = re.compile(r"([,.])(\s+|$)")
_LONG_PAUSE_RE = re.compile(r"([?!])(\s+|$)")


def to_ssml(text: str) -> str:
    """
    Wrap plain text in SSML that sounds less robotic on the phone.

    Slightly slower and lower voice, short breaks after commas and periods,
    longer ones after questions and exclamations.
    """
    escaped = html.escape(text.strip(), quote=False)
    escaped = _SHORT_PAUSE_RE.sub(r'\1<break time="200ms"/>\2', escaped)
    escaped = _LONG_PAUSE_RE.sub(r'\1<break time="350ms"/>\2', escaped)
    return f'<speak><prosody rate="95%" pitch="-1st">{escaped}</prosody></speak>'


class GoogleCloudTTS(SpeechSynthesizer):
    """Google Cloud Text-to-Speech over REST (API key auth), MULAW 8kHz."""

    name = "google"

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(self.config.tts_timeout_seconds))

    def _payload(self, text: str) -> dict:
        return {
            "input": {"ssml": to_ssml(text)},
            "voice": {
                "languageCode": self.config.google_tts_language,
                "name": self.config.google_tts_voice,
            },
            "audioConfig": {
                "audioEncoding": "MULAW",
                "sampleRateHertz": TWILIO_SAMPLE_RATE,
            },
        }

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            raise ProviderError(self.name, "empty text")
        if not self.config.google_tts_api_key:
            raise ProviderError(self.name, "GOOGLE_TTS_API_KEY not set")

        started = time.time()
        try:
            resp = await self._client.post(
                GOOGLE_TTS_URL,
                params={"key": self.config.google_tts_api_key},
                json=self._payload(text),
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as e:
            raise ProviderTimeout(self.name, f"no audio within {self.config.tts_timeout_seconds}s") from e
        except httpx.HTTPStatusError as e:
            raise ProviderError(self.name, f"HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise ProviderError(self.name, "response is not JSON") from e

        audio_b64 = data.get("audioContent") if isinstance(data, dict) else None
        if not audio_b64:
            raise ProviderError(self.name, "response missing audioContent")

        try:
            audio = base64.b64decode(audio_b64)
        except (binascii.Error, ValueError) as e:
            raise ProviderError(self.name, "audioContent is not base64") from e

        # MULAW responses come wrapped in a WAV header.
        try:
            audio = strip_wav_header(audio)
        except ValueError as e:
            raise ProviderError(self.name, str(e)) from e

        logger.debug(
            "Google TTS synthesized",
            chars=len(text),
            audio_bytes=len(audio),
            elapsed_ms=round((time.time() - started) * 1000, 2),
        )
        return audio

    async def close(self) -> None:
        await self._client.aclose()
