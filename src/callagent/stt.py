"""
Deepgram Speech-to-Text streaming client.

Accepts mu-law 8kHz directly from Twilio (no conversion needed) and turns
Deepgram messages into session events:
- `Results`        -> TranscriptFragment (`speech_final` marks end of speech)
- `UtteranceEnd`   -> EndOfSpeech
- `SpeechStarted`  -> SpeechStarted
- unexpected close -> RecognizerFailure
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.callagent.audio import TWILIO_SAMPLE_RATE
from src.callagent.collaborators import SpeechRecognizer
from src.callagent.config import Config, get_config
from src.callagent.events import (
    EndOfSpeech,
    ProviderEvent,
    RecognizerFailure,
    SpeechStarted,
    TranscriptFragment,
)

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_ms: float = 0.0
    total_transcripts: int = 0
    final_transcripts: int = 0
    avg_latency_ms: float = 0.0

    def record_transcript(self, is_final: bool, latency_ms: float) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1
        self.avg_latency_ms = (
            (self.avg_latency_ms * (self.total_transcripts - 1) + latency_ms)
            / self.total_transcripts
        )


def build_listen_url(config: Config) -> str:
    params = {
        "model": config.deepgram_model,
        "encoding": "mulaw",
        "sample_rate": TWILIO_SAMPLE_RATE,
        "channels": 1,
        "punctuate": "true",
        "interim_results": "true",
        "smart_format": "true",
        "vad_events": "true",
        "endpointing": config.deepgram_endpointing_ms,
        "utterance_end_ms": config.deepgram_utterance_end_ms,
        "language": config.deepgram_language,
    }
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


class DeepgramSTT(SpeechRecognizer):
    """
    Deepgram streaming STT client using raw WebSocket.

    `on_event` is called synchronously from the receive loop; the session
    wires it to its queue so events are handled in the session's own task.
    """

    def __init__(
        self,
        on_event: Optional[Callable[[ProviderEvent], None]] = None,
        config: Optional[Config] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.on_event = on_event or (lambda event: None)
        self._ws: Optional[Any] = None
        self._is_connected = False
        self._closing = False
        self._metrics = STTMetrics()
        self._last_audio_time: float = 0.0
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            logger.info("Connecting to Deepgram", model=self.config.deepgram_model)
            self._ws = await websockets.connect(
                build_listen_url(self.config),
                additional_headers=headers,
                open_timeout=10,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._closing = False
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected")
        return True

    async def close(self) -> None:
        """Disconnect from Deepgram."""
        self._closing = True
        self._is_connected = False

        if self._receive_task:
            self._receive_task.cancel()
            await asyncio.gather(self._receive_task, return_exceptions=True)
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
                await self._ws.close()
            except websockets.exceptions.WebSocketException as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info(
            "Deepgram STT disconnected",
            audio_seconds=round(self._metrics.total_audio_ms / 1000, 2),
            transcripts=self._metrics.total_transcripts,
            final_transcripts=self._metrics.final_transcripts,
            avg_latency_ms=round(self._metrics.avg_latency_ms, 2),
        )

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws:
            return

        try:
            self._last_audio_time = time.time()
            self._metrics.total_audio_ms += len(audio_bytes) * 1000 / TWILIO_SAMPLE_RATE
            await self._ws.send(audio_bytes)
        except websockets.exceptions.ConnectionClosed as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        failure: Optional[str] = None
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue
                self._handle_message(data)
        except websockets.exceptions.ConnectionClosed as e:
            failure = f"connection closed: {e}"
        except asyncio.CancelledError:
            raise
        finally:
            self._is_connected = False

        if self._closing:
            return
        # The server ended the stream without us asking.
        logger.error("Deepgram stream ended unexpectedly", error=failure or "stream ended")
        self.on_event(RecognizerFailure(error=failure or "stream ended", fatal=True))

    def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            alternatives = data.get("channel", {}).get("alternatives", [])
            transcript = alternatives[0].get("transcript", "") if alternatives else ""
            confidence = alternatives[0].get("confidence", 0.0) if alternatives else 0.0
            is_final = bool(data.get("is_final", False))
            speech_final = bool(data.get("speech_final", False))

            # Empty results still matter when they carry the end-of-speech flag.
            if not transcript and not speech_final:
                return

            latency_ms = 0.0
            if self._last_audio_time > 0:
                latency_ms = (time.time() - self._last_audio_time) * 1000
            self._metrics.record_transcript(is_final, latency_ms)

            logger.debug(
                "STT transcript",
                chars=len(transcript),
                is_final=is_final,
                speech_final=speech_final,
            )
            self.on_event(TranscriptFragment(
                text=transcript,
                is_final=is_final,
                is_end_of_speech=speech_final,
                confidence=confidence,
            ))

        elif msg_type_norm == "utteranceend":
            logger.debug("STT utterance end")
            self.on_event(EndOfSpeech())

        elif msg_type_norm == "speechstarted":
            logger.debug("STT speech started")
            self.on_event(SpeechStarted())

        elif msg_type_norm == "error":
            logger.error("Deepgram error message", description=data.get("description"))

        elif msg_type_norm == "metadata":
            logger.debug("STT metadata", request_id=data.get("request_id"))
