"""
Twilio Media Streams WebSocket protocol.

Inbound messages (JSON, tagged by `event`):
- connected: Initial connection
- start: Stream started, carries streamSid and callSid
- media: One frame of caller audio (base64 mu-law 8kHz)
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected (ignored by the agent)
- stop: Stream stopped, the call is over

Outbound messages:
- media: Agent audio (base64 mu-law 8kHz, 20ms frames)
- mark: Request playback acknowledgment
- clear: Drop audio Twilio has buffered but not yet played (barge-in)

Messages are decoded into typed msgspec structs; `media.payload` is decoded
from base64 by msgspec itself.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import msgspec
import structlog

from src.callagent.audio import TWILIO_FRAME_SIZE, chunk_audio

logger = structlog.get_logger(__name__)

MAX_RTT_SAMPLES = 20


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


class StartMetadata(msgspec.Struct, rename="camel"):
    call_sid: str = ""
    account_sid: str = ""
    tracks: List[str] = msgspec.field(default_factory=list)
    custom_parameters: Dict[str, Any] = msgspec.field(default_factory=dict)


class MediaPayload(msgspec.Struct):
    payload: bytes = b""
    track: str = "inbound"
    # Twilio sends these as strings; older fixtures use ints.
    chunk: Union[int, str] = 0
    timestamp: Union[int, str] = ""


class MarkPayload(msgspec.Struct):
    name: str = ""


class DTMFPayload(msgspec.Struct):
    digit: str = ""


class ConnectedMessage(msgspec.Struct, tag_field="event", tag="connected"):
    protocol: str = ""


class StartMessage(msgspec.Struct, tag_field="event", tag="start", rename="camel"):
    stream_sid: str = ""
    start: StartMetadata = msgspec.field(default_factory=StartMetadata)

    @property
    def call_sid(self) -> str:
        return self.start.call_sid


class MediaMessage(msgspec.Struct, tag_field="event", tag="media", rename="camel"):
    stream_sid: str = ""
    media: MediaPayload = msgspec.field(default_factory=MediaPayload)


class MarkMessage(msgspec.Struct, tag_field="event", tag="mark", rename="camel"):
    stream_sid: str = ""
    mark: MarkPayload = msgspec.field(default_factory=MarkPayload)


class DTMFMessage(msgspec.Struct, tag_field="event", tag="dtmf", rename="camel"):
    stream_sid: str = ""
    dtmf: DTMFPayload = msgspec.field(default_factory=DTMFPayload)


class StopMessage(msgspec.Struct, tag_field="event", tag="stop", rename="camel"):
    stream_sid: str = ""


InboundMessage = Union[
    ConnectedMessage,
    StartMessage,
    MediaMessage,
    MarkMessage,
    DTMFMessage,
    StopMessage,
]


class OutboundMedia(msgspec.Struct):
    payload: bytes


class OutboundMark(msgspec.Struct):
    name: str


class OutboundMediaMessage(msgspec.Struct, tag_field="event", tag="media", rename="camel"):
    stream_sid: str
    media: OutboundMedia


class OutboundMarkMessage(msgspec.Struct, tag_field="event", tag="mark", rename="camel"):
    stream_sid: str
    mark: OutboundMark


class OutboundClearMessage(msgspec.Struct, tag_field="event", tag="clear", rename="camel"):
    stream_sid: str


decoder = msgspec.json.Decoder(InboundMessage)
encoder = msgspec.json.Encoder()

_EVENT_TYPES = {
    ConnectedMessage: TwilioEventType.CONNECTED,
    StartMessage: TwilioEventType.START,
    MediaMessage: TwilioEventType.MEDIA,
    MarkMessage: TwilioEventType.MARK,
    DTMFMessage: TwilioEventType.DTMF,
    StopMessage: TwilioEventType.STOP,
}


def parse_twilio_message(raw_message: Union[str, bytes]) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, typed message struct)

    Raises:
        ValueError: If the message is not valid JSON, has an unknown event
            type, or a field has the wrong shape (e.g. bad base64 payload)
    """
    data = raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
    try:
        message = decoder.decode(data)
    except msgspec.ValidationError as e:
        raise ValueError(f"Invalid Twilio message: {e}") from e
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e

    return _EVENT_TYPES[type(message)], message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (should be 160 bytes for 20ms)

    Returns:
        JSON string to send to Twilio
    """
    message = OutboundMediaMessage(stream_sid=stream_sid, media=OutboundMedia(payload=audio_payload))
    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """Create a mark message; Twilio echoes it back once playback reaches it."""
    message = OutboundMarkMessage(stream_sid=stream_sid, mark=OutboundMark(name=name))
    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """Create a clear message, which flushes audio buffered on Twilio's side."""
    return encoder.encode(OutboundClearMessage(stream_sid=stream_sid)).decode("utf-8")


def parse_mark_generation(mark_name: str) -> Optional[int]:
    """
    Parse a playback generation id from a mark name.

    Expected format for generated marks: `g{gen}_m{seq}`.
    Returns None if the format doesn't match.
    """
    if not isinstance(mark_name, str) or not mark_name.startswith("g"):
        return None
    gen_part = mark_name.split("_", 1)[0]
    try:
        return int(gen_part[1:])
    except ValueError:
        return None


@dataclass
class PlaybackTracker:
    """
    Outbound playback state for one Twilio stream.

    Every playback is followed by a mark; the stream counts as playing while
    marks of the current generation are unacknowledged. `clear` bumps the
    generation so late acknowledgments of flushed audio are ignored.
    """
    stream_sid: str
    call_sid: str = ""
    playback_generation_id: int = 0
    mark_sequence: int = 0
    pending_marks: Dict[str, float] = field(default_factory=dict)  # mark_name -> send_time
    mark_rtt_samples: List[float] = field(default_factory=list)

    @property
    def is_playing(self) -> bool:
        return bool(self.pending_marks)

    @property
    def avg_mark_rtt_ms(self) -> float:
        if not self.mark_rtt_samples:
            return 0.0
        return sum(self.mark_rtt_samples) / len(self.mark_rtt_samples)

    def audio_messages(self, audio_bytes: bytes) -> List[str]:
        """Chunk audio into 20ms media messages."""
        return [
            create_media_message(self.stream_sid, chunk)
            for chunk in chunk_audio(audio_bytes, TWILIO_FRAME_SIZE)
        ]

    def next_mark(self) -> str:
        """Create the mark message that closes the current playback."""
        self.mark_sequence += 1
        name = f"g{self.playback_generation_id}_m{self.mark_sequence}"
        self.pending_marks[name] = time.time()
        return create_mark_message(self.stream_sid, name)

    def acknowledge(self, mark_name: str) -> float:
        """
        Handle a mark acknowledgment.

        Returns:
            Round-trip time in ms, or 0 for stale or unknown marks
        """
        mark_gen = parse_mark_generation(mark_name)
        if mark_gen is not None and mark_gen != self.playback_generation_id:
            logger.debug(
                "Ignoring stale mark acknowledgment",
                mark_name=mark_name,
                mark_generation=mark_gen,
                current_generation=self.playback_generation_id,
            )
            return 0.0

        send_time = self.pending_marks.pop(mark_name, None)
        if send_time is None:
            return 0.0

        rtt_ms = (time.time() - send_time) * 1000
        self.mark_rtt_samples.append(rtt_ms)
        if len(self.mark_rtt_samples) > MAX_RTT_SAMPLES:
            self.mark_rtt_samples.pop(0)
        return rtt_ms

    def clear(self) -> str:
        """Bump the playback generation and build the clear message."""
        self.playback_generation_id += 1
        self.mark_sequence = 0
        self.pending_marks.clear()
        logger.info(
            "Clearing Twilio audio buffer",
            stream_sid=self.stream_sid,
            playback_generation_id=self.playback_generation_id,
        )
        return create_clear_message(self.stream_sid)
