"""
Response delivery: synthesis, playback instruction, barge-in.

A delivery synthesizes the reply, moves the turn to DELIVERING, asks call
control to play it and to keep listening, and always hands the gate back.
If every synthesizer fails, the precomputed fallback audio is played instead
so the caller never hears dead air.
"""

from __future__ import annotations

import re
import time
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog

from src.callagent.audio import create_silence_ulaw, get_audio_duration_ms, strip_wav_header
from src.callagent.collaborators import CallControl, ProviderError, SpeechSynthesizer
from src.callagent.turn_state import TurnGate

logger = structlog.get_logger(__name__)

FALLBACK_SILENCE_MS = 500

_BACKCHANNEL_RE = re.compile(
    r"^(ok|okay|yeah|yep|yup|uh huh|uh-huh|mhm|mm hmm|mm-hmm|hmm)([.!?,])?$"
)

_HARD_PHRASE_RE = re.compile(
    r"\b(stop|wait|hold on|one second|pause|cancel|actually|listen|sorry|excuse me|no no)\b"
)


def _normalize_for_intent(text: str) -> str:
    text = (text or "").strip().lower()
    text = text.replace("’", "'")
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", text)


def is_backchannel(text: str) -> bool:
    t = _normalize_for_intent(text)
    return bool(t and _BACKCHANNEL_RE.match(t))


def is_barge_in(text: str, min_words: int = 2) -> bool:
    """
    Whether caller speech over a reply should interrupt it.

    Pure acknowledgments ("ok", "mhm") never do; hard phrases ("wait",
    "actually") always do; anything else needs `min_words` words.
    """
    t = _normalize_for_intent(text)
    if not t or is_backchannel(t):
        return False
    if _HARD_PHRASE_RE.search(t):
        return True
    return len(re.findall(r"[\w']+", t)) >= min_words


@dataclass
class DeliveryResult:
    played: bool = False
    used_fallback_audio: bool = False
    interrupted: bool = False
    call_control_failed: bool = False
    synth_ms: float = 0.0
    audio_ms: float = 0.0


class ResponseDeliveryController:
    """Delivers replies for one session."""

    def __init__(
        self,
        session_id: str,
        gate: TurnGate,
        synthesizer: SpeechSynthesizer,
        call_control: CallControl,
        fallback_audio: bytes = b"",
    ):
        self.session_id = session_id
        self.gate = gate
        self.synthesizer = synthesizer
        self.call_control = call_control
        self.fallback_audio = fallback_audio
        self._active = False
        self._interrupted = False

    @property
    def is_active(self) -> bool:
        """True between the start of synthesis and the playback instruction."""
        return self._active

    def reset(self) -> None:
        """Forget an interruption aimed at an earlier reply."""
        self._interrupted = False

    async def deliver(self, text: str) -> DeliveryResult:
        """Synthesize and play `text`. The gate is back to IDLE when this returns."""
        result = DeliveryResult()
        self._active = True
        try:
            started = time.time()
            try:
                audio = await self.synthesizer.synthesize(text)
            except ProviderError as e:
                logger.warning(
                    "Synthesis failed, playing fallback audio",
                    session_id=self.session_id,
                    provider=e.provider,
                    error=str(e),
                )
                audio = self.fallback_audio
                result.used_fallback_audio = True
            except Exception as e:
                logger.error(
                    "Synthesis raised unexpectedly, playing fallback audio",
                    session_id=self.session_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                audio = self.fallback_audio
                result.used_fallback_audio = True
            result.synth_ms = (time.time() - started) * 1000

            if self._interrupted:
                result.interrupted = True
                logger.info(
                    "Reply interrupted before playback, dropping audio",
                    session_id=self.session_id,
                    synth_ms=round(result.synth_ms, 2),
                )
                return result

            if not audio:
                logger.error("No audio to play", session_id=self.session_id)
                return result

            self.gate.mark_delivering()
            if not await self.call_control.play_audio(self.session_id, audio):
                result.call_control_failed = True
                logger.error("Call control rejected playback", session_id=self.session_id)
                return result
            result.played = True
            result.audio_ms = get_audio_duration_ms(audio)

            if not await self.call_control.resume_streaming(self.session_id):
                result.call_control_failed = True
                logger.error("Call control could not resume streaming", session_id=self.session_id)

            logger.info(
                "Reply delivered",
                session_id=self.session_id,
                audio_ms=round(result.audio_ms, 2),
                synth_ms=round(result.synth_ms, 2),
                fallback_audio=result.used_fallback_audio,
            )
            return result
        finally:
            self._active = False
            self._interrupted = False
            self.gate.release()

    async def interrupt(self) -> bool:
        """
        Barge-in: drop the reply still being prepared and stop current playback.

        Returns whether call control confirmed the stop.
        """
        if not self.gate.is_idle:
            self._interrupted = True
        stopped = await self.call_control.stop_audio(self.session_id)
        logger.info(
            "Playback interrupted",
            session_id=self.session_id,
            turn_state=self.gate.state.value,
            stop_confirmed=stopped,
        )
        return stopped


async def load_fallback_audio(config: Any, synthesizer: Optional[SpeechSynthesizer] = None) -> bytes:
    """
    Precompute the audio played when synthesis fails.

    Order: `FALLBACK_AUDIO_PATH` (raw mu-law or WAV-wrapped mu-law), then the
    fallback reply rendered once at startup, then a short silence.
    """
    path = getattr(config, "fallback_audio_path", "")
    if path:
        try:
            audio = strip_wav_header(Path(path).read_bytes())
        except (OSError, ValueError) as e:
            logger.warning("Failed to load fallback audio file", path=path, error=str(e))
        else:
            if audio:
                logger.info("Fallback audio loaded from file", path=path, audio_bytes=len(audio))
                return audio

    if synthesizer is not None and getattr(config, "fallback_reply_text", ""):
        try:
            audio = await synthesizer.synthesize(config.fallback_reply_text)
        except Exception as e:
            logger.warning("Failed to pre-render fallback audio", error_type=type(e).__name__, error=str(e))
        else:
            if audio:
                logger.info("Fallback audio pre-rendered", audio_bytes=len(audio))
                return audio

    logger.warning("Using silence as fallback audio", duration_ms=FALLBACK_SILENCE_MS)
    return create_silence_ulaw(FALLBACK_SILENCE_MS)
