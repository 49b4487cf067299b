from __future__ import annotations

import time
from typing import Any, Optional

import httpx
import structlog

from src.callagent.audio import TWILIO_SAMPLE_RATE, strip_wav_header
from src.callagent.collaborators import ProviderError, ProviderTimeout, SpeechSynthesizer
from src.callagent.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"


class DeepgramAuraTTS(SpeechSynthesizer):
    """
    Deepgram Aura TTS over REST.

    Asks for raw mu-law 8kHz (`container=none`), which Twilio plays as-is.
    """

    name = "deepgram"

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(self.config.tts_timeout_seconds))

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            raise ProviderError(self.name, "empty text")

        params = {
            "model": self.config.deepgram_tts_model,
            "encoding": "mulaw",
            "sample_rate": TWILIO_SAMPLE_RATE,
            "container": "none",
        }
        headers = {
            "Authorization": f"Token {self.config.deepgram_api_key}",
            "Content-Type": "application/json",
        }

        started = time.time()
        try:
            resp = await self._client.post(
                DEEPGRAM_SPEAK_URL,
                params=params,
                headers=headers,
                json={"text": text},
            )
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderTimeout(self.name, f"no audio within {self.config.tts_timeout_seconds}s") from e
        except httpx.HTTPStatusError as e:
            raise ProviderError(self.name, f"HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"{type(e).__name__}: {e}") from e

        # Some accounts ignore container=none and still send a WAV header.
        try:
            audio = strip_wav_header(resp.content)
        except ValueError as e:
            raise ProviderError(self.name, str(e)) from e
        if not audio:
            raise ProviderError(self.name, "empty audio")

        logger.debug(
            "Deepgram TTS synthesized",
            chars=len(text),
            audio_bytes=len(audio),
            elapsed_ms=round((time.time() - started) * 1000, 2),
        )
        return audio

    async def close(self) -> None:
        await self._client.aclose()
