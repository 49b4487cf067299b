"""
Tests for the Media Streams connection handler.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.callagent.media_stream import MediaStreamConnection


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock()
    orchestrator.start = AsyncMock()
    orchestrator.close = AsyncMock()
    return orchestrator


@pytest.fixture
def call_control():
    return MagicMock()


@pytest.mark.asyncio
async def test_start_attaches_and_starts_session(orchestrator, call_control, twilio_start_message):
    send = AsyncMock()
    connection = MediaStreamConnection(orchestrator, call_control, send)

    await connection.handle_message(twilio_start_message)

    call_control.attach.assert_called_once_with("MZ123456", "CA789012", send)
    orchestrator.start.assert_awaited_once_with("MZ123456", "CA789012")


@pytest.mark.asyncio
async def test_media_forwarded_after_start(orchestrator, call_control, twilio_start_message, twilio_media_message, sample_ulaw_audio):
    connection = MediaStreamConnection(orchestrator, call_control, AsyncMock())

    await connection.handle_message(twilio_media_message)
    orchestrator.on_media_frame.assert_not_called()

    await connection.handle_message(twilio_start_message)
    await connection.handle_message(twilio_media_message)

    orchestrator.on_media_frame.assert_called_once_with("MZ123456", sample_ulaw_audio)
    assert connection.media_frames == 1


@pytest.mark.asyncio
async def test_mark_routed_to_call_control(orchestrator, call_control, twilio_start_message):
    connection = MediaStreamConnection(orchestrator, call_control, AsyncMock())
    await connection.handle_message(twilio_start_message)

    await connection.handle_message(json.dumps({"event": "mark", "streamSid": "MZ123456", "mark": {"name": "g0_m1"}}))

    call_control.handle_mark.assert_called_once_with("MZ123456", "g0_m1")


@pytest.mark.asyncio
async def test_stop_ends_call(orchestrator, call_control, twilio_start_message, twilio_stop_message):
    connection = MediaStreamConnection(orchestrator, call_control, AsyncMock())
    await connection.handle_message(twilio_start_message)

    await connection.handle_message(twilio_stop_message)

    orchestrator.on_call_end.assert_called_once_with("MZ123456")


@pytest.mark.asyncio
async def test_malformed_message_dropped(orchestrator, call_control):
    connection = MediaStreamConnection(orchestrator, call_control, AsyncMock())

    await connection.handle_message("{not json")
    await connection.handle_message(json.dumps({"event": "bogus"}))

    assert connection.invalid_messages == 2
    orchestrator.start.assert_not_called()


@pytest.mark.asyncio
async def test_close_tears_down_session(orchestrator, call_control, twilio_start_message):
    connection = MediaStreamConnection(orchestrator, call_control, AsyncMock())
    await connection.handle_message(twilio_start_message)

    await connection.close()

    orchestrator.close.assert_awaited_once_with("MZ123456", reason="media_closed")
    call_control.detach.assert_called_once_with("MZ123456")


@pytest.mark.asyncio
async def test_close_before_start_is_a_no_op(orchestrator, call_control):
    connection = MediaStreamConnection(orchestrator, call_control, AsyncMock())

    await connection.close()

    orchestrator.close.assert_not_called()


@pytest.mark.asyncio
async def test_outbound_track_and_connected_ignored(orchestrator, call_control, twilio_start_message):
    connection = MediaStreamConnection(orchestrator, call_control, AsyncMock())
    await connection.handle_message(json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"}))
    await connection.handle_message(twilio_start_message)

    outbound = {
        "event": "media",
        "streamSid": "MZ123456",
        "media": {"track": "outbound", "chunk": "2", "timestamp": "20", "payload": "/w=="},
    }
    await connection.handle_message(json.dumps(outbound))

    orchestrator.on_media_frame.assert_not_called()
    assert connection.invalid_messages == 0
