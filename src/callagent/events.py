"""
Events consumed by a call session's event queue.

Everything that can change a session (media frames, recognizer output, timer
firings, turn completion, call end) is one of these, and each session handles
them one at a time in arrival order.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union


@dataclass(frozen=True)
class MediaFrame:
    """One chunk of caller audio (opaque bytes, 20ms of mu-law for Twilio)."""
    payload: bytes


@dataclass(frozen=True)
class TranscriptFragment:
    """One recognition result from the STT provider."""
    text: str
    is_final: bool
    is_end_of_speech: bool = False
    confidence: float = 0.0
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class EndOfSpeech:
    """Provider boundary signal that carries no text (e.g. Deepgram UtteranceEnd)."""
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SpeechStarted:
    """Provider VAD onset."""
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RecognizerFailure:
    """The STT connection failed; `fatal` means it will not recover on its own."""
    error: str
    fatal: bool = True


@dataclass(frozen=True)
class SafetyTimerFired:
    generation: int


@dataclass(frozen=True)
class CheckInDue:
    generation: int


@dataclass(frozen=True)
class TurnFinished:
    """Posted by the turn task once the gate is back to idle."""
    turn_id: int
    outcome: Optional[Any] = None


@dataclass(frozen=True)
class CallEnded:
    reason: str = "stop"


ProviderEvent = Union[TranscriptFragment, EndOfSpeech, SpeechStarted, RecognizerFailure]

SessionEvent = Union[
    MediaFrame,
    TranscriptFragment,
    EndOfSpeech,
    SpeechStarted,
    RecognizerFailure,
    SafetyTimerFired,
    CheckInDue,
    TurnFinished,
    CallEnded,
]
