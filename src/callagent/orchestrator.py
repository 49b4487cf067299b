"""
Process-wide session registry.

The id -> session map is the only structure shared between calls. Provider
clients handed in here are stateless across calls (one recognizer is built
per session by `recognizer_factory`).
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

import structlog

from src.callagent.collaborators import CallControl, ReplyGenerator, SpeechRecognizer, SpeechSynthesizer
from src.callagent.config import Config, get_config
from src.callagent.events import ProviderEvent
from src.callagent.session import CallSession

logger = structlog.get_logger(__name__)


class SessionOrchestrator:
    def __init__(
        self,
        *,
        recognizer_factory: Callable[[], SpeechRecognizer],
        generator: ReplyGenerator,
        synthesizer: SpeechSynthesizer,
        call_control: CallControl,
        fallback_audio: bytes = b"",
        config: Optional[Config] = None,
        call_later: Optional[Callable[..., Any]] = None,
    ):
        self.config = config or get_config()
        self.recognizer_factory = recognizer_factory
        self.generator = generator
        self.synthesizer = synthesizer
        self.call_control = call_control
        self.fallback_audio = fallback_audio
        self._call_later = call_later
        self._sessions: Dict[str, CallSession] = {}
        self.started_at = time.time()
        self.total_sessions = 0
        self.total_turns = 0
        self.total_interruptions = 0
        self.total_fallback_replies = 0

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[CallSession]:
        return self._sessions.get(session_id)

    async def start(self, session_id: str, call_id: str) -> Optional[CallSession]:
        """Create and start the session for a new media stream."""
        if session_id in self._sessions:
            logger.warning("Session already exists, ignoring start", session_id=session_id)
            return self._sessions[session_id]

        session = CallSession(
            session_id,
            call_id,
            recognizer=self.recognizer_factory(),
            generator=self.generator,
            synthesizer=self.synthesizer,
            call_control=self.call_control,
            fallback_audio=self.fallback_audio,
            config=self.config,
            on_closed=self._on_session_closed,
            call_later=self._call_later,
        )
        self._sessions[session_id] = session
        self.total_sessions += 1
        logger.info("Session registered", session_id=session_id, call_id=call_id, active_sessions=self.active_count)

        await session.start()
        return session if not session.is_closed else None

    def on_media_frame(self, session_id: str, payload: bytes) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.on_media_frame(payload)

    def on_provider_event(self, session_id: str, event: ProviderEvent) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.on_provider_event(event)

    def on_call_end(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.on_call_end("stop")

    async def close(self, session_id: str, reason: str = "media_closed") -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            await session.close(reason)

    async def close_all(self, reason: str = "shutdown") -> None:
        for session in list(self._sessions.values()):
            await session.close(reason)

    def _on_session_closed(self, session: CallSession) -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
        self.total_turns += session.metrics.turns
        self.total_interruptions += session.metrics.interruptions
        self.total_fallback_replies += session.metrics.fallback_replies
        logger.info("Session removed", session_id=session.session_id, active_sessions=self.active_count)

    def stats(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.started_at, 2),
            "active_sessions": self.active_count,
            "total_sessions": self.total_sessions,
            "total_turns": self.total_turns,
            "total_interruptions": self.total_interruptions,
            "total_fallback_replies": self.total_fallback_replies,
            "tts_fallbacks": getattr(self.synthesizer, "fallback_count", 0),
        }
