"""
Twilio implementation of call control.

Playback goes out over the Media Streams websocket of the call (media frames
followed by a mark); ending a call goes through the Twilio REST API.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from src.callagent.collaborators import CallControl
from src.callagent.config import get_config
from src.callagent.twilio_protocol import PlaybackTracker

logger = structlog.get_logger(__name__)

SendText = Callable[[str], Awaitable[None]]


@dataclass
class _Stream:
    send: SendText
    tracker: PlaybackTracker


class TwilioCallControl(CallControl):
    """
    Routes playback to the media stream attached for each session.

    Sessions are keyed by stream SID; the media stream handler attaches the
    websocket sender on `start` and detaches it on `stop` or disconnect.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[TwilioClient] = None):
        self.config = config or get_config()
        self._client = client
        self._streams: Dict[str, _Stream] = {}

    def _get_client(self) -> Optional[TwilioClient]:
        if self._client is None and self.config.twilio_account_sid and self.config.twilio_auth_token:
            self._client = TwilioClient(self.config.twilio_account_sid, self.config.twilio_auth_token)
        return self._client

    def attach(self, session_id: str, call_id: str, send: SendText) -> PlaybackTracker:
        tracker = PlaybackTracker(stream_sid=session_id, call_sid=call_id)
        self._streams[session_id] = _Stream(send=send, tracker=tracker)
        return tracker

    def detach(self, session_id: str) -> Optional[PlaybackTracker]:
        stream = self._streams.pop(session_id, None)
        if stream is None:
            return None
        logger.info(
            "Media stream detached",
            session_id=session_id,
            playback_generations=stream.tracker.playback_generation_id,
            mark_acks=len(stream.tracker.mark_rtt_samples),
            avg_mark_rtt_ms=round(stream.tracker.avg_mark_rtt_ms, 2),
        )
        return stream.tracker

    async def play_audio(self, session_id: str, audio: bytes) -> bool:
        stream = self._streams.get(session_id)
        if stream is None:
            logger.warning("Cannot play audio, no media stream attached", session_id=session_id)
            return False

        messages = stream.tracker.audio_messages(audio)
        messages.append(stream.tracker.next_mark())
        try:
            for message in messages:
                await stream.send(message)
        except Exception as e:
            logger.error(
                "Failed to send audio to Twilio",
                session_id=session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.debug("Audio queued to Twilio", session_id=session_id, frames=len(messages) - 1)
        return True

    async def resume_streaming(self, session_id: str) -> bool:
        # A bidirectional stream keeps sending caller audio during playback,
        # so there is nothing to re-open; the stream only has to still exist.
        return session_id in self._streams

    async def stop_audio(self, session_id: str) -> bool:
        stream = self._streams.get(session_id)
        if stream is None:
            return False
        try:
            await stream.send(stream.tracker.clear())
        except Exception as e:
            logger.warning("Failed to send Twilio clear", session_id=session_id, error=str(e))
            return False
        return True

    def is_playing(self, session_id: str) -> bool:
        stream = self._streams.get(session_id)
        return bool(stream and stream.tracker.is_playing)

    def handle_mark(self, session_id: str, mark_name: str) -> None:
        stream = self._streams.get(session_id)
        if stream is None:
            return
        rtt_ms = stream.tracker.acknowledge(mark_name)
        if rtt_ms:
            logger.debug("Playback mark acknowledged", session_id=session_id, mark=mark_name, rtt_ms=round(rtt_ms, 2))

    async def end_call(self, session_id: str, call_id: str) -> bool:
        """Hang up the call via Twilio REST API."""
        client = self._get_client()
        if client is None or not call_id:
            logger.warning("Cannot hangup - missing Twilio client or call_sid", session_id=session_id)
            return False

        try:
            # The REST client is blocking.
            await asyncio.to_thread(lambda: client.calls(call_id).update(status="completed"))
        except TwilioException as e:
            logger.error("Failed to hang up call", call_sid=call_id, error=str(e))
            return False

        logger.info("Call hung up", call_sid=call_id, session_id=session_id)
        return True
