"""
One phone call: event loop, turn taking, barge-in, silence check-ins.

Everything that can change a session goes through its event queue and is
handled by a single task, one event at a time:
- caller audio is forwarded to the recognizer
- recognizer events feed the boundary detector
- a finalized utterance starts a turn in a child task (frames keep flowing)
- the turn task posts `TurnFinished` when it is done
- timers post `SafetyTimerFired` / `CheckInDue` with a generation number

An exception raised while handling one event is logged and that event is
dropped; lifecycle failures (recognizer lost, call control failing) close the
session.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from src.callagent.boundary import UtteranceBoundaryDetector
from src.callagent.collaborators import CallControl, ReplyGenerator, SpeechRecognizer, SpeechSynthesizer
from src.callagent.config import Config, get_config
from src.callagent.delivery import ResponseDeliveryController, is_backchannel, is_barge_in
from src.callagent.events import (
    CallEnded,
    CheckInDue,
    EndOfSpeech,
    MediaFrame,
    ProviderEvent,
    RecognizerFailure,
    SafetyTimerFired,
    SessionEvent,
    SpeechStarted,
    TranscriptFragment,
    TurnFinished,
)
from src.callagent.llm import get_system_prompt
from src.callagent.memory import MemoryStore
from src.callagent.turn_state import TurnGate
from src.callagent.turns import Turn, TurnOutcome, TurnProcessor

logger = structlog.get_logger(__name__)

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)

_LOG_PHONE_RE = re.compile(
    r"(?:\+?1[\s\-.]?)?(?:\(?\d{3}\)?[\s\-.]?)\d{3}[\s\-.]?\d{4}"
)


def redact_for_logs(text: str) -> str:
    """
    Best-effort redaction for logs (to reduce accidental PII exposure).

    Masks emails as [EMAIL] and phone numbers as [PHONE-***1234].
    """
    if not text:
        return ""

    redacted = _EMAIL_RE.sub("[EMAIL]", text)

    def _mask_phone(match: re.Match) -> str:
        digits = re.sub(r"\D+", "", match.group(0) or "")
        return f"[PHONE-***{digits[-4:]}]"

    return _LOG_PHONE_RE.sub(_mask_phone, redacted)


class SessionState(str, Enum):
    CREATED = "created"
    STREAMING = "streaming"  # media open, recognizer connecting
    LISTENING = "listening"
    RESPONDING = "responding"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class SessionMetrics:
    """Metrics for an entire call."""
    session_id: str = ""
    call_id: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: int = 0
    announcements: int = 0
    fallback_replies: int = 0
    fallback_audio: int = 0
    interruptions: int = 0
    discarded_utterances: int = 0
    dropped_events: int = 0
    checkins: int = 0
    media_frames: int = 0
    llm_ms_total: float = 0.0
    tts_ms_total: float = 0.0
    audio_ms_total: float = 0.0
    close_reason: str = ""

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def record(self, outcome: TurnOutcome) -> None:
        if outcome.announcement:
            self.announcements += 1
        else:
            self.turns += 1
            self.llm_ms_total += outcome.llm_ms
            if outcome.used_fallback_reply:
                self.fallback_replies += 1
        if outcome.delivery:
            self.tts_ms_total += outcome.delivery.synth_ms
            self.audio_ms_total += outcome.delivery.audio_ms
            if outcome.delivery.used_fallback_audio:
                self.fallback_audio += 1

    def to_dict(self) -> Dict[str, Any]:
        deliveries = self.turns + self.announcements
        return {
            "session_id": self.session_id,
            "call_id": self.call_id,
            "duration_seconds": round(self.duration_seconds, 2),
            "turns": self.turns,
            "announcements": self.announcements,
            "fallback_replies": self.fallback_replies,
            "fallback_audio": self.fallback_audio,
            "interruptions": self.interruptions,
            "discarded_utterances": self.discarded_utterances,
            "dropped_events": self.dropped_events,
            "checkins": self.checkins,
            "media_frames": self.media_frames,
            "audio_played_seconds": round(self.audio_ms_total / 1000, 2),
            "avg_llm_ms": round(self.llm_ms_total / self.turns, 2) if self.turns else 0,
            "avg_tts_ms": round(self.tts_ms_total / deliveries, 2) if deliveries else 0,
            "close_reason": self.close_reason,
        }


class CallSession:
    """All state of one call, driven by its own event queue."""

    def __init__(
        self,
        session_id: str,
        call_id: str,
        *,
        recognizer: SpeechRecognizer,
        generator: ReplyGenerator,
        synthesizer: SpeechSynthesizer,
        call_control: CallControl,
        fallback_audio: bytes = b"",
        config: Optional[Config] = None,
        on_closed: Optional[Callable[["CallSession"], None]] = None,
        call_later: Optional[Callable[..., Any]] = None,
    ):
        if config is None:
            config = get_config()

        self.session_id = session_id
        self.call_id = call_id
        self.config = config
        self.state = SessionState.CREATED
        self.created_at = time.time()
        self.metrics = SessionMetrics(session_id=session_id, call_id=call_id)

        self.recognizer = recognizer
        self.recognizer.on_event = self.on_provider_event
        self.call_control = call_control
        self._on_closed = on_closed
        self._call_later = call_later

        self.queue: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self.gate = TurnGate(session_id)
        self.memory = MemoryStore(
            get_system_prompt(config),
            max_turns=config.max_history_turns,
            max_facts=config.max_facts,
        )
        self.delivery = ResponseDeliveryController(
            session_id, self.gate, synthesizer, call_control, fallback_audio
        )
        self.turns = TurnProcessor(
            session_id,
            self.gate,
            self.memory,
            generator,
            self.delivery,
            fallback_text=config.fallback_reply_text,
            min_chars=config.min_utterance_chars,
        )
        self.boundary = UtteranceBoundaryDetector(
            timeout_seconds=config.boundary_timeout_seconds,
            min_chars=config.min_utterance_chars,
            post=self._post,
            call_later=call_later,
        )

        self._run_task: Optional[asyncio.Task] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._turn_id: Optional[int] = None
        self._pending_text: Optional[str] = None
        self._checkin_timer: Optional[Any] = None
        self._checkin_generation = 0
        self._unanswered_checkins = 0

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        return self.state in (SessionState.CLOSING, SessionState.CLOSED)

    @property
    def turn_in_flight(self) -> bool:
        return self._turn_task is not None

    @property
    def pending_text(self) -> Optional[str]:
        """Utterance waiting for the in-flight turn to finish."""
        return self._pending_text

    async def start(self) -> bool:
        """Open the recognizer and start consuming events."""
        if self.state != SessionState.CREATED:
            return False

        self.state = SessionState.STREAMING
        self._run_task = asyncio.create_task(self._run())
        logger.info("Session started", session_id=self.session_id, call_id=self.call_id)

        if not await self.recognizer.connect():
            logger.error("Recognizer unavailable, closing session", session_id=self.session_id)
            await self._end_call_and_close("stt_unavailable")
            return False
        if self.is_closed:
            return False

        self.state = SessionState.LISTENING
        if self.config.greeting_text:
            self._start_turn(self.config.greeting_text, announcement=True)
        else:
            self._arm_checkin()
        return True

    def on_media_frame(self, payload: bytes) -> None:
        self._post(MediaFrame(payload=payload))

    def on_provider_event(self, event: ProviderEvent) -> None:
        self._post(event)

    def on_call_end(self, reason: str = "stop") -> None:
        self._post(CallEnded(reason=reason))

    async def close(self, reason: str = "closed") -> None:
        """Cancel timers and tasks and release provider connections. Idempotent."""
        if self.is_closed:
            return
        self.state = SessionState.CLOSING
        self.metrics.close_reason = reason

        self.boundary.cancel()
        self._cancel_checkin()
        self._pending_text = None

        current = asyncio.current_task()
        tasks = [
            task for task in (self._turn_task, self._run_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._turn_task = None

        try:
            await self.recognizer.close()
        except Exception as e:
            logger.warning("Error closing recognizer", session_id=self.session_id, error=str(e))

        self.state = SessionState.CLOSED
        self.metrics.discarded_utterances = self.boundary.discarded
        self.metrics.end_time = time.time()
        logger.info("Session closed", reason=reason, **self.metrics.to_dict())

        if self._on_closed:
            self._on_closed(self)

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    def _post(self, event: SessionEvent) -> None:
        if self.state == SessionState.CLOSED:
            return
        self.queue.put_nowait(event)

    async def _run(self) -> None:
        while not self.is_closed:
            event = await self.queue.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                self.metrics.dropped_events += 1
                logger.error(
                    "Error handling session event, dropping it",
                    session_id=self.session_id,
                    event_type=type(event).__name__,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            finally:
                self.queue.task_done()

    async def handle_event(self, event: SessionEvent) -> None:
        if self.is_closed:
            return

        if isinstance(event, MediaFrame):
            self.metrics.media_frames += 1
            await self.recognizer.send_audio(event.payload)
        elif isinstance(event, TranscriptFragment):
            await self._on_fragment(event)
        elif isinstance(event, EndOfSpeech):
            utterance = self.boundary.on_end_of_speech()
            if utterance is not None:
                self._on_utterance(utterance.text)
        elif isinstance(event, SpeechStarted):
            logger.debug("Caller speech started", session_id=self.session_id)
        elif isinstance(event, SafetyTimerFired):
            utterance = self.boundary.on_timer(event)
            if utterance is not None:
                self._on_utterance(utterance.text)
        elif isinstance(event, CheckInDue):
            await self._on_checkin_due(event)
        elif isinstance(event, TurnFinished):
            await self._on_turn_finished(event)
        elif isinstance(event, RecognizerFailure):
            await self._on_recognizer_failure(event)
        elif isinstance(event, CallEnded):
            await self.close(event.reason)
        else:
            raise ValueError(f"Unknown session event: {event!r}")

    # ------------------------------------------------------------------
    # Turn taking
    # ------------------------------------------------------------------

    async def _on_fragment(self, fragment: TranscriptFragment) -> None:
        text = (fragment.text or "").strip()

        if text:
            self._unanswered_checkins = 0
            if self.state == SessionState.LISTENING and not self.turn_in_flight:
                self._arm_checkin()

        if (
            fragment.is_final
            and text
            and self._reply_in_progress()
            and is_barge_in(text, self.config.min_interruption_words)
        ):
            self.metrics.interruptions += 1
            logger.info(
                "Barge-in detected",
                session_id=self.session_id,
                text=redact_for_logs(text),
                turn_state=self.gate.state.value,
            )
            await self.delivery.interrupt()

        utterance = self.boundary.on_fragment(fragment)
        if utterance is not None:
            self._on_utterance(utterance.text)

    def _reply_in_progress(self) -> bool:
        return self.turn_in_flight or self.call_control.is_playing(self.session_id)

    def _on_utterance(self, text: str) -> None:
        if self.state not in (SessionState.LISTENING, SessionState.RESPONDING):
            return

        if not self.turn_in_flight:
            self._start_turn(text)
            return

        if is_backchannel(text):
            logger.debug("Dropping backchannel during turn", session_id=self.session_id)
            return

        # Submitted as soon as the in-flight turn finishes.
        self._pending_text = f"{self._pending_text} {text}" if self._pending_text else text
        logger.info(
            "Utterance queued behind in-flight turn",
            session_id=self.session_id,
            text=redact_for_logs(self._pending_text),
        )

    def _start_turn(self, text: str, *, announcement: bool = False) -> bool:
        turn = self.turns.try_accept(text, announcement=announcement)
        if turn is None:
            return False

        self._cancel_checkin()
        self.state = SessionState.RESPONDING
        self._turn_id = turn.turn_id
        self._turn_task = asyncio.create_task(self._run_turn(turn))
        if not announcement:
            logger.info("Caller turn", session_id=self.session_id, turn_id=turn.turn_id, text=redact_for_logs(text))
        return True

    async def _run_turn(self, turn: Turn) -> None:
        outcome: Optional[TurnOutcome] = None
        try:
            outcome = await self.turns.run(turn)
        except Exception as e:
            logger.error(
                "Turn failed",
                session_id=self.session_id,
                turn_id=turn.turn_id,
                error_type=type(e).__name__,
                error=str(e),
            )
        self._post(TurnFinished(turn_id=turn.turn_id, outcome=outcome))

    async def _on_turn_finished(self, event: TurnFinished) -> None:
        if event.turn_id != self._turn_id:
            return
        self._turn_task = None
        self._turn_id = None

        outcome = event.outcome
        if outcome is not None:
            self.metrics.record(outcome)
            if outcome.delivery is not None and outcome.delivery.call_control_failed:
                await self.close("call_control_failed")
                return

        if self.state != SessionState.RESPONDING:
            return
        self.state = SessionState.LISTENING

        if self._pending_text:
            text, self._pending_text = self._pending_text, None
            if self._start_turn(text):
                return

        self._arm_checkin()

    async def _on_recognizer_failure(self, event: RecognizerFailure) -> None:
        if not event.fatal:
            logger.warning("Recognizer hiccup", session_id=self.session_id, error=event.error)
            return
        logger.error("Recognizer failed", session_id=self.session_id, error=event.error)
        await self._end_call_and_close("stt_failure")

    async def _end_call_and_close(self, reason: str) -> None:
        if self.config.hangup_on_failure or reason == "no_response":
            await self.call_control.end_call(self.session_id, self.call_id)
        await self.close(reason)

    # ------------------------------------------------------------------
    # Silence check-in
    # ------------------------------------------------------------------

    def _arm_checkin(self) -> None:
        self._cancel_checkin()
        if self.config.checkin_timeout_seconds <= 0:
            return
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._checkin_timer = call_later(
            self.config.checkin_timeout_seconds,
            self._post,
            CheckInDue(generation=self._checkin_generation),
        )

    def _cancel_checkin(self) -> None:
        if self._checkin_timer is not None:
            self._checkin_timer.cancel()
            self._checkin_timer = None
        self._checkin_generation += 1

    async def _on_checkin_due(self, event: CheckInDue) -> None:
        if self._checkin_timer is None or event.generation != self._checkin_generation:
            return
        self._checkin_timer = None

        # A finishing turn re-arms the timer.
        if self.state != SessionState.LISTENING or self.turn_in_flight:
            return
        if self.boundary.pending:
            self._arm_checkin()
            return

        if self._unanswered_checkins >= self.config.max_checkins:
            logger.info(
                "Caller silent after check-ins, ending call",
                session_id=self.session_id,
                checkins=self._unanswered_checkins,
            )
            await self._end_call_and_close("no_response")
            return

        self._unanswered_checkins += 1
        self.metrics.checkins += 1
        logger.info("Caller silent, checking in", session_id=self.session_id, checkin=self._unanswered_checkins)
        self._start_turn(self.config.checkin_text, announcement=True)
