"""
Per-call conversational memory.

Holds three things:
- the preamble (instructions and context), always sent first and never evicted
- a bounded fact table learned during the call (e.g. budget, city)
- a rolling history of caller/agent messages, capped in whole exchanges
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List


class Role(str, Enum):
    CALLER = "caller"
    AGENT = "agent"


@dataclass(frozen=True)
class Message:
    role: Role
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class MemorySnapshot:
    """Immutable view handed to the reply generator."""
    preamble: str
    facts: Dict[str, str]
    history: List[Message]


class MemoryStore:
    """
    Bounded fact table plus rolling history for one call.

    An exchange is one caller message and the agent messages that follow it.
    When the history grows past `max_turns` exchanges' worth of messages, the
    oldest exchange is evicted as a whole.
    """

    def __init__(self, preamble: str = "", *, max_turns: int = 10, max_facts: int = 32):
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self.preamble = preamble
        self.max_turns = max_turns
        self.max_facts = max_facts
        self._facts: Dict[str, str] = {}
        self._history: List[Message] = []

    @property
    def max_messages(self) -> int:
        return self.max_turns * 2

    @property
    def facts(self) -> Dict[str, str]:
        return dict(self._facts)

    @property
    def history(self) -> List[Message]:
        return list(self._history)

    def upsert(self, key: str, value: str) -> None:
        """Insert or overwrite a fact. The least recently written key is evicted when full."""
        key = (key or "").strip()
        if not key:
            return
        # Re-inserting moves the key to the end, so eviction order follows the last write.
        self._facts.pop(key, None)
        self._facts[key] = value
        while self.max_facts > 0 and len(self._facts) > self.max_facts:
            oldest = next(iter(self._facts))
            del self._facts[oldest]

    def append_history(self, role: Role, text: str) -> None:
        self._history.append(Message(role=Role(role), text=text))
        while len(self._history) > self.max_messages:
            self._evict_oldest_exchange()

    def snapshot(self) -> MemorySnapshot:
        return MemorySnapshot(preamble=self.preamble, facts=self.facts, history=self.history)

    def _evict_oldest_exchange(self) -> None:
        self._history.pop(0)
        while self._history and self._history[0].role == Role.AGENT:
            self._history.pop(0)

    def __len__(self) -> int:
        return len(self._history)
