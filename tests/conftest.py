"""
Pytest configuration and fixtures.
"""

import asyncio
import base64
import json
import os
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import patch

import pytest

from src.callagent.collaborators import (
    CallControl,
    GeneratedReply,
    ProviderError,
    ReplyGenerator,
    SpeechRecognizer,
    SpeechSynthesizer,
)
from src.callagent.memory import MemorySnapshot


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "GOOGLE_TTS_API_KEY": "test_google_key",
        "LLM_PROVIDER": "openai",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o",
        "GREETING_TEXT": "",
        "FALLBACK_AUDIO_PATH": "",
    }

    with patch.dict(os.environ, env_vars):
        from src.callagent.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeTimerHandle:
    def __init__(self, scheduler: "FakeScheduler", delay: float, callback: Callable, args: tuple):
        self.scheduler = scheduler
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """`loop.call_later` stand-in; timers fire only when the test says so."""

    def __init__(self) -> None:
        self.handles: List[FakeTimerHandle] = []

    def __call__(self, delay: float, callback: Callable, *args: Any) -> FakeTimerHandle:
        handle = FakeTimerHandle(self, delay, callback, args)
        self.handles.append(handle)
        return handle

    @property
    def armed(self) -> List[FakeTimerHandle]:
        return [h for h in self.handles if not h.cancelled]

    def fire(self, handle: FakeTimerHandle) -> None:
        """Fire a handle even if cancelled (simulates a callback racing the cancel)."""
        handle.callback(*handle.args)

    def fire_armed(self) -> int:
        armed = self.armed
        for handle in armed:
            handle.cancelled = True
            handle.callback(*handle.args)
        return len(armed)


class FakeRecognizer(SpeechRecognizer):
    def __init__(self, connect_ok: bool = True):
        self.on_event = lambda event: None
        self.connect_ok = connect_ok
        self.audio: List[bytes] = []
        self.closed = False

    async def connect(self) -> bool:
        return self.connect_ok

    async def send_audio(self, audio_bytes: bytes) -> None:
        self.audio.append(audio_bytes)

    async def close(self) -> None:
        self.closed = True


class FakeGenerator(ReplyGenerator):
    """Returns queued replies in order; an exception in the queue is raised."""

    def __init__(self, *replies: Any, gate: Optional[asyncio.Event] = None):
        self.replies = list(replies)
        self.snapshots: List[MemorySnapshot] = []
        self.gate = gate

    async def generate(self, snapshot: MemorySnapshot) -> GeneratedReply:
        self.snapshots.append(snapshot)
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0) if self.replies else "Okay."
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, GeneratedReply):
            return reply
        return GeneratedReply(text=reply)


class FakeSynthesizer(SpeechSynthesizer):
    name = "fake"

    def __init__(self, fail: bool = False, gate: Optional[asyncio.Event] = None):
        self.fail = fail
        self.gate = gate
        self.texts: List[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.texts.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ProviderError(self.name, "synthesis failed")
        return b"\x7f" * 320


class FakeCallControl(CallControl):
    def __init__(self, play_ok: bool = True, resume_ok: bool = True):
        self.play_ok = play_ok
        self.resume_ok = resume_ok
        self.played: List[bytes] = []
        self.resumed = 0
        self.stopped = 0
        self.ended: List[str] = []
        self.playing = False

    async def play_audio(self, session_id: str, audio: bytes) -> bool:
        if not self.play_ok:
            return False
        self.played.append(audio)
        self.playing = True
        return True

    async def resume_streaming(self, session_id: str) -> bool:
        self.resumed += 1
        return self.resume_ok

    async def stop_audio(self, session_id: str) -> bool:
        self.stopped += 1
        self.playing = False
        return True

    def is_playing(self, session_id: str) -> bool:
        return self.playing

    async def end_call(self, session_id: str, call_id: str) -> bool:
        self.ended.append(call_id)
        return True


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": "1",
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })


def config_with(**overrides: Dict[str, Any]):
    """Current env config with some fields replaced."""
    from dataclasses import replace

    from src.callagent.config import get_config

    return replace(get_config(), **overrides)
