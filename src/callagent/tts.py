from __future__ import annotations

from typing import Any, Optional

import structlog

from src.callagent.collaborators import SpeechSynthesizer
from src.callagent.config import get_config
from src.callagent.tts_providers.deepgram import DeepgramAuraTTS
from src.callagent.tts_providers.google import GoogleCloudTTS

logger = structlog.get_logger(__name__)


class FallbackSynthesizer(SpeechSynthesizer):
    """
    Primary synthesizer with a reliability fallback.

    Callers see one synthesizer: if the primary raises, the fallback is tried
    with the same text, and only the fallback's error reaches the caller.
    """

    def __init__(self, primary: SpeechSynthesizer, fallback: Optional[SpeechSynthesizer] = None):
        self.primary = primary
        self.fallback = fallback
        self.name = primary.name if fallback is None else f"{primary.name}+{fallback.name}"
        self.fallback_count = 0

    async def synthesize(self, text: str) -> bytes:
        try:
            return await self.primary.synthesize(text)
        except Exception as e:
            if self.fallback is None:
                raise
            self.fallback_count += 1
            logger.warning(
                "Primary TTS failed, using fallback",
                primary=self.primary.name,
                fallback=self.fallback.name,
                error_type=type(e).__name__,
                error=str(e),
            )

        return await self.fallback.synthesize(text)

    async def close(self) -> None:
        await self.primary.close()
        if self.fallback is not None:
            await self.fallback.close()


def create_synthesizer(config: Optional[Any] = None) -> SpeechSynthesizer:
    """Deepgram Aura, falling back to Google Cloud TTS when a key is configured."""
    config = config or get_config()
    primary = DeepgramAuraTTS(config)
    if not config.google_tts_api_key:
        logger.info("Google TTS key not set, running without TTS fallback")
        return FallbackSynthesizer(primary)
    return FallbackSynthesizer(primary, GoogleCloudTTS(config))
