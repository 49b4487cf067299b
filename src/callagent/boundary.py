"""
Utterance boundary detection (endpointing).

Two paths finalize the caller's utterance:
- Provider end-of-speech: a final fragment flagged `is_end_of_speech`
  (Deepgram `speech_final`) or a bare `EndOfSpeech` event (Deepgram
  `UtteranceEnd`). This is the primary, lowest-latency path.
- Safety timer: re-armed on every fragment while an utterance is pending,
  so it can only fire after the caller has gone quiet for the whole timeout.

Timer firings are not acted on directly. The timer posts a
`SafetyTimerFired(generation)` event into the session queue, and every arm or
cancel bumps the generation, so a firing that raced a newer fragment or a
provider finalization is recognized as stale and ignored.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import structlog

from src.callagent.events import SafetyTimerFired, TranscriptFragment
from src.callagent.transcript import TranscriptBuffer, Utterance

logger = structlog.get_logger(__name__)

CallLater = Callable[..., Any]


class UtteranceBoundaryDetector:
    """Per-session endpointing state: the transcript buffer plus one safety timer."""

    def __init__(
        self,
        *,
        timeout_seconds: float,
        min_chars: int,
        post: Callable[[SafetyTimerFired], None],
        call_later: Optional[CallLater] = None,
    ):
        """
        Args:
            timeout_seconds: Safety timer duration after the last fragment
            min_chars: Minimum stripped length of an utterance worth a turn
            post: Enqueues timer events into the owning session's queue
            call_later: `loop.call_later`-compatible scheduler (defaults to
                the running loop's)
        """
        self.timeout_seconds = timeout_seconds
        self.min_chars = min_chars
        self._post = post
        self._call_later = call_later
        self._buffer = TranscriptBuffer()
        self._timer: Optional[Any] = None
        self._generation = 0
        self.discarded = 0

    @property
    def pending(self) -> bool:
        """True while final text is accumulated and not yet finalized."""
        return not self._buffer.is_empty

    @property
    def pending_text(self) -> str:
        return self._buffer.text

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def on_fragment(self, fragment: TranscriptFragment) -> Optional[Utterance]:
        """Consume one recognition result; returns an utterance if it ends the turn."""
        text = (fragment.text or "").strip()

        if fragment.is_final and text:
            self._buffer.append(text, now=fragment.timestamp)

        if fragment.is_end_of_speech and self._long_enough():
            return self._finalize(source="provider")

        # Any sign of speech pushes the deadline out while an utterance is pending.
        if self.pending and (text or fragment.is_end_of_speech):
            self._arm()

        return None

    def on_end_of_speech(self) -> Optional[Utterance]:
        """Provider boundary without text."""
        if not self.pending:
            return None
        if not self._long_enough():
            # Too short to finalize on its own; the safety timer decides.
            self._arm()
            return None
        return self._finalize(source="provider")

    def on_timer(self, event: SafetyTimerFired) -> Optional[Utterance]:
        """Handle a safety timer firing; stale generations are ignored."""
        if self._timer is None or event.generation != self._generation:
            logger.debug(
                "Ignoring stale safety timer",
                generation=event.generation,
                current_generation=self._generation,
            )
            return None

        self._timer = None
        return self._finalize(source="timer")

    def cancel(self) -> None:
        """Cancel the timer and drop any accumulated text."""
        self._cancel_timer()
        self._buffer.clear()

    def _long_enough(self) -> bool:
        return len(self._buffer.text.strip()) >= self.min_chars

    def _finalize(self, *, source: str) -> Optional[Utterance]:
        self._cancel_timer()
        utterance = self._buffer.take()
        if utterance is None:
            return None

        if len(utterance.text.strip()) < self.min_chars:
            self.discarded += 1
            logger.debug(
                "Discarding short utterance",
                source=source,
                chars=len(utterance.text.strip()),
                min_chars=self.min_chars,
            )
            return None

        logger.info(
            "Utterance finalized",
            source=source,
            chars=len(utterance.text),
            duration_ms=round(utterance.duration_ms, 2),
        )
        return utterance

    def _arm(self) -> None:
        self._cancel_timer()
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._timer = call_later(
            self.timeout_seconds,
            self._post,
            SafetyTimerFired(generation=self._generation),
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._generation += 1
