"""
One Twilio Media Streams websocket connection.

Translates protocol messages into orchestrator calls; the session itself
never sees Twilio JSON.
"""

from __future__ import annotations

from typing import Optional

import structlog

from src.callagent.call_control import SendText, TwilioCallControl
from src.callagent.orchestrator import SessionOrchestrator
from src.callagent.twilio_protocol import (
    ConnectedMessage,
    DTMFMessage,
    MarkMessage,
    MediaMessage,
    StartMessage,
    StopMessage,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


class MediaStreamConnection:
    def __init__(self, orchestrator: SessionOrchestrator, call_control: TwilioCallControl, send: SendText):
        self.orchestrator = orchestrator
        self.call_control = call_control
        self.send = send
        self.stream_sid: Optional[str] = None
        self.call_sid: Optional[str] = None
        self.media_frames = 0
        self.invalid_messages = 0

    async def handle_message(self, raw_message: str) -> None:
        try:
            _, message = parse_twilio_message(raw_message)
        except ValueError as e:
            self.invalid_messages += 1
            logger.warning("Dropping invalid Twilio message", stream_sid=self.stream_sid, error=str(e))
            return

        if isinstance(message, MediaMessage):
            if self.stream_sid is None or message.media.track not in ("inbound", ""):
                return
            self.media_frames += 1
            self.orchestrator.on_media_frame(self.stream_sid, message.media.payload)

        elif isinstance(message, StartMessage):
            await self._handle_start(message)

        elif isinstance(message, MarkMessage):
            if self.stream_sid is not None:
                self.call_control.handle_mark(self.stream_sid, message.mark.name)

        elif isinstance(message, DTMFMessage):
            logger.info("DTMF received, ignoring", stream_sid=self.stream_sid, digit=message.dtmf.digit)

        elif isinstance(message, StopMessage):
            logger.info("Twilio stream stopped", stream_sid=self.stream_sid, call_sid=self.call_sid)
            if self.stream_sid is not None:
                self.orchestrator.on_call_end(self.stream_sid)

        elif isinstance(message, ConnectedMessage):
            logger.debug("Twilio media stream connected")

    async def _handle_start(self, message: StartMessage) -> None:
        if self.stream_sid is not None:
            logger.warning("Duplicate start message, ignoring", stream_sid=self.stream_sid)
            return
        if not message.stream_sid:
            logger.warning("Start message without streamSid, ignoring")
            return

        self.stream_sid = message.stream_sid
        self.call_sid = message.call_sid
        logger.info("Call started", stream_sid=self.stream_sid, call_sid=self.call_sid)

        self.call_control.attach(self.stream_sid, self.call_sid, self.send)
        await self.orchestrator.start(self.stream_sid, self.call_sid)

    async def close(self) -> None:
        """Media channel closed: tear the session down and forget the stream."""
        if self.stream_sid is None:
            return
        await self.orchestrator.close(self.stream_sid, reason="media_closed")
        self.call_control.detach(self.stream_sid)
        logger.info(
            "Media stream closed",
            stream_sid=self.stream_sid,
            media_frames=self.media_frames,
            invalid_messages=self.invalid_messages,
        )
