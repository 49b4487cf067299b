"""
Tests for Twilio protocol handling.
"""

import base64
import json

import pytest

from src.callagent.twilio_protocol import (
    DTMFMessage,
    MarkMessage,
    MediaMessage,
    PlaybackTracker,
    StartMessage,
    TwilioEventType,
    create_clear_message,
    create_mark_message,
    create_media_message,
    parse_mark_generation,
    parse_twilio_message,
)


class TestMessageParsing:
    """Tests for parsing Twilio messages."""

    def test_parse_connected_event(self):
        message = json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"})
        event_type, _ = parse_twilio_message(message)

        assert event_type == TwilioEventType.CONNECTED

    def test_parse_start_event(self, twilio_start_message):
        event_type, event = parse_twilio_message(twilio_start_message)

        assert event_type == TwilioEventType.START
        assert isinstance(event, StartMessage)
        assert event.stream_sid == "MZ123456"
        assert event.call_sid == "CA789012"
        assert event.start.account_sid == "AC345678"
        assert event.start.tracks == ["inbound"]

    def test_parse_start_custom_parameters(self):
        message = json.dumps({
            "event": "start",
            "streamSid": "MZ123",
            "start": {"callSid": "CA456", "customParameters": {"key": "value"}},
        })
        _, event = parse_twilio_message(message)

        assert event.start.custom_parameters == {"key": "value"}

    def test_parse_media_event(self, twilio_media_message, sample_ulaw_audio):
        event_type, event = parse_twilio_message(twilio_media_message)

        assert event_type == TwilioEventType.MEDIA
        assert isinstance(event, MediaMessage)
        assert event.stream_sid == "MZ123456"
        assert event.media.track == "inbound"
        assert event.media.payload == sample_ulaw_audio

    def test_parse_mark_event(self):
        message = json.dumps({"event": "mark", "streamSid": "MZ123", "mark": {"name": "g0_m1"}})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MARK
        assert isinstance(event, MarkMessage)
        assert event.mark.name == "g0_m1"

    def test_parse_dtmf_event(self):
        message = json.dumps({"event": "dtmf", "streamSid": "MZ123", "dtmf": {"digit": "5"}})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.DTMF
        assert isinstance(event, DTMFMessage)
        assert event.dtmf.digit == "5"

    def test_parse_stop_event(self, twilio_stop_message):
        event_type, event = parse_twilio_message(twilio_stop_message)

        assert event_type == TwilioEventType.STOP
        assert event.stream_sid == "MZ123456"

    def test_parse_invalid_json(self):
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_twilio_message("not valid json")

    def test_parse_unknown_event(self):
        with pytest.raises(ValueError, match="Invalid Twilio message"):
            parse_twilio_message(json.dumps({"event": "unknown_event"}))

    def test_parse_bad_base64_payload(self):
        message = json.dumps({"event": "media", "streamSid": "MZ1", "media": {"payload": "@@not base64@@"}})
        with pytest.raises(ValueError):
            parse_twilio_message(message)


class TestMessageCreation:
    """Tests for creating Twilio messages."""

    def test_create_media_message(self):
        audio_data = b"\xff" * 160
        parsed = json.loads(create_media_message("MZ123", audio_data))

        assert parsed["event"] == "media"
        assert parsed["streamSid"] == "MZ123"
        assert base64.b64decode(parsed["media"]["payload"]) == audio_data

    def test_create_mark_message(self):
        parsed = json.loads(create_mark_message("MZ123", "mark_42"))

        assert parsed == {"event": "mark", "streamSid": "MZ123", "mark": {"name": "mark_42"}}

    def test_create_clear_message(self):
        parsed = json.loads(create_clear_message("MZ123"))

        assert parsed == {"event": "clear", "streamSid": "MZ123"}


class TestPlaybackTracker:
    def test_audio_messages_are_20ms_frames(self):
        tracker = PlaybackTracker(stream_sid="MZ123")

        # 320 bytes = 2 chunks of 160
        messages = tracker.audio_messages(b"\xff" * 320)

        assert len(messages) == 2
        for message in messages:
            parsed = json.loads(message)
            assert parsed["event"] == "media"
            assert len(base64.b64decode(parsed["media"]["payload"])) == 160

    def test_mark_tracks_playback(self):
        tracker = PlaybackTracker(stream_sid="MZ123")
        mark = json.loads(tracker.next_mark())

        assert mark["mark"]["name"] == "g0_m1"
        assert tracker.is_playing

        assert tracker.acknowledge("g0_m1") >= 0
        assert not tracker.is_playing
        assert len(tracker.mark_rtt_samples) == 1

    def test_clear_bumps_generation_and_ignores_late_marks(self):
        tracker = PlaybackTracker(stream_sid="MZ123")
        tracker.next_mark()

        clear = json.loads(tracker.clear())

        assert clear["event"] == "clear"
        assert tracker.playback_generation_id == 1
        assert not tracker.is_playing
        assert tracker.acknowledge("g0_m1") == 0.0
        assert tracker.mark_rtt_samples == []

    def test_parse_mark_generation(self):
        assert parse_mark_generation("g3_m7") == 3
        assert parse_mark_generation("custom") is None
        assert parse_mark_generation("gx_m1") is None
