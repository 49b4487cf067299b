"""
Tests for the transcript buffer.
"""

from src.callagent.transcript import TranscriptBuffer


def test_new_buffer_is_empty():
    buffer = TranscriptBuffer()

    assert buffer.is_empty
    assert buffer.take() is None


def test_append_joins_with_single_space():
    buffer = TranscriptBuffer()
    buffer.append("  I want ", now=10.0)
    buffer.append("to sell", now=10.5)

    assert buffer.text == "I want to sell"


def test_take_clears_atomically():
    buffer = TranscriptBuffer()
    buffer.append("Hello", now=1.0)
    buffer.append("there", now=2.5)

    utterance = buffer.take()

    assert utterance.text == "Hello there"
    assert utterance.duration_ms == 1500.0
    assert buffer.is_empty
    assert buffer.take() is None


def test_whitespace_only_fragments_are_ignored():
    buffer = TranscriptBuffer()
    buffer.append("   ")

    assert buffer.is_empty
