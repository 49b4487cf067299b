"""Accumulation of final recognition fragments into the caller's utterance."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional


@dataclass
class Utterance:
    """The caller's finalized speech since the last turn boundary."""
    text: str
    started_at: float
    updated_at: float

    @property
    def duration_ms(self) -> float:
        return (self.updated_at - self.started_at) * 1000


class TranscriptBuffer:
    """
    Holds at most one accumulating utterance.

    Final fragments are appended with a single space; interim fragments are
    never stored since the provider re-sends their text in the final result.
    """

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._started_at: float = 0.0
        self._updated_at: float = 0.0

    @property
    def text(self) -> str:
        return " ".join(self._parts)

    @property
    def is_empty(self) -> bool:
        return not self._parts

    def append(self, text: str, *, now: Optional[float] = None) -> None:
        """Append the text of a final fragment."""
        text = (text or "").strip()
        if not text:
            return
        now = time.time() if now is None else now
        if not self._parts:
            self._started_at = now
        self._parts.append(text)
        self._updated_at = now

    def take(self) -> Optional[Utterance]:
        """Return the accumulated utterance and clear the buffer."""
        if not self._parts:
            return None
        utterance = Utterance(
            text=self.text,
            started_at=self._started_at,
            updated_at=self._updated_at,
        )
        self.clear()
        return utterance

    def clear(self) -> None:
        self._parts = []
        self._started_at = 0.0
        self._updated_at = 0.0
