"""
Interfaces of the collaborators a call session talks to.

The concrete vendors (Deepgram, Google, OpenAI/Groq, Twilio) live behind these
and can be swapped without touching the session logic.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict

from src.callagent.events import ProviderEvent
from src.callagent.memory import MemorySnapshot


class ProviderError(Exception):
    """A collaborator call failed (non-2xx, bad payload, connection error)."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ProviderTimeout(ProviderError):
    """A collaborator call did not finish within its configured timeout."""
    pass


@dataclass
class GeneratedReply:
    """Raw reply text plus any facts the model returned in structured form."""
    text: str
    facts: Dict[str, str] = field(default_factory=dict)
    structured: bool = False


class SpeechRecognizer(ABC):
    """Streaming STT: audio in, `ProviderEvent`s out through `on_event`."""

    on_event: Callable[[ProviderEvent], None]

    @abstractmethod
    async def connect(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def send_audio(self, audio_bytes: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError


class ReplyGenerator(ABC):
    @abstractmethod
    async def generate(self, snapshot: MemorySnapshot) -> GeneratedReply:
        """Raises `ProviderTimeout` or `ProviderError` on failure."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class SpeechSynthesizer(ABC):
    name: str = "tts"

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Return mu-law 8kHz audio. Raises `ProviderTimeout` or `ProviderError`."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class CallControl(ABC):
    """Telephony side of playback. Calls confirm the instruction, not its completion."""

    @abstractmethod
    async def play_audio(self, session_id: str, audio: bytes) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def resume_streaming(self, session_id: str) -> bool:
        raise NotImplementedError

    async def stop_audio(self, session_id: str) -> bool:
        return False

    def is_playing(self, session_id: str) -> bool:
        return False

    async def end_call(self, session_id: str, call_id: str) -> bool:
        return False
