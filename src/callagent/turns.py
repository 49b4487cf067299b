"""
Turn processing: one caller utterance in, one spoken reply out.

Acceptance is synchronous (`try_accept`) so the gate is taken before the
first suspension point; a second acceptance attempt while a turn is in
flight is a no-op. `run` then generates, updates memory and delivers.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

import structlog

from src.callagent.annotations import extract_fact_annotations, normalize_fact_key
from src.callagent.collaborators import ProviderError, ProviderTimeout, ReplyGenerator
from src.callagent.delivery import DeliveryResult, ResponseDeliveryController
from src.callagent.memory import MemoryStore, Role
from src.callagent.turn_state import TurnGate

logger = structlog.get_logger(__name__)


@dataclass
class Turn:
    turn_id: int
    text: str
    announcement: bool = False
    accepted_at: float = field(default_factory=time.time)


@dataclass
class TurnOutcome:
    turn_id: int
    reply_text: str
    announcement: bool = False
    used_fallback_reply: bool = False
    facts_learned: Dict[str, str] = field(default_factory=dict)
    delivery: Optional[DeliveryResult] = None
    llm_ms: float = 0.0
    total_ms: float = 0.0


class TurnProcessor:
    def __init__(
        self,
        session_id: str,
        gate: TurnGate,
        memory: MemoryStore,
        generator: ReplyGenerator,
        delivery: ResponseDeliveryController,
        *,
        fallback_text: str,
        min_chars: int = 2,
    ):
        self.session_id = session_id
        self.gate = gate
        self.memory = memory
        self.generator = generator
        self.delivery = delivery
        self.fallback_text = fallback_text
        self.min_chars = min_chars
        self._last_turn_id = 0

    def try_accept(self, text: str, *, announcement: bool = False) -> Optional[Turn]:
        """
        Take the gate for `text`, or return None.

        Caller turns record the caller message in memory on acceptance;
        announcements (greeting, check-in) leave memory untouched.
        """
        text = (text or "").strip()
        if not announcement and len(text) < self.min_chars:
            logger.debug("Turn rejected, text too short", session_id=self.session_id, chars=len(text))
            return None
        if not text:
            return None

        turn_id = self._last_turn_id + 1
        if not self.gate.try_acquire(turn_id):
            return None
        self._last_turn_id = turn_id
        self.delivery.reset()

        if not announcement:
            self.memory.append_history(Role.CALLER, text)

        logger.info(
            "Turn accepted",
            session_id=self.session_id,
            turn_id=turn_id,
            announcement=announcement,
            chars=len(text),
        )
        return Turn(turn_id=turn_id, text=text, announcement=announcement)

    async def run(self, turn: Turn) -> TurnOutcome:
        """Generate (unless announcing) and deliver. The gate is IDLE afterwards."""
        try:
            if turn.announcement:
                outcome = TurnOutcome(turn_id=turn.turn_id, reply_text=turn.text, announcement=True)
            else:
                outcome = await self._generate(turn)
            outcome.delivery = await self.delivery.deliver(outcome.reply_text)
            outcome.total_ms = (time.time() - turn.accepted_at) * 1000

            logger.info(
                "Turn completed",
                session_id=self.session_id,
                turn_id=turn.turn_id,
                announcement=outcome.announcement,
                fallback_reply=outcome.used_fallback_reply,
                facts_learned=sorted(outcome.facts_learned),
                llm_ms=round(outcome.llm_ms, 2),
                total_ms=round(outcome.total_ms, 2),
            )
            return outcome
        except asyncio.CancelledError:
            logger.info("Turn cancelled", session_id=self.session_id, turn_id=turn.turn_id)
            raise
        finally:
            self.gate.release()

    async def process_turn(self, text: str) -> Optional[TurnOutcome]:
        turn = self.try_accept(text)
        if turn is None:
            return None
        return await self.run(turn)

    async def _generate(self, turn: Turn) -> TurnOutcome:
        outcome = TurnOutcome(turn_id=turn.turn_id, reply_text=self.fallback_text, used_fallback_reply=True)
        started = time.time()
        try:
            reply = await self.generator.generate(self.memory.snapshot())
        except ProviderTimeout as e:
            outcome.llm_ms = (time.time() - started) * 1000
            logger.warning("Reply generation timed out", session_id=self.session_id, turn_id=turn.turn_id, error=str(e))
            return outcome
        except ProviderError as e:
            outcome.llm_ms = (time.time() - started) * 1000
            logger.warning("Reply generation failed", session_id=self.session_id, turn_id=turn.turn_id, error=str(e))
            return outcome
        except Exception as e:
            outcome.llm_ms = (time.time() - started) * 1000
            logger.error(
                "Reply generation raised unexpectedly",
                session_id=self.session_id,
                turn_id=turn.turn_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return outcome
        outcome.llm_ms = (time.time() - started) * 1000

        text, annotated = extract_fact_annotations(reply.text)
        if not text:
            logger.warning("Reply empty after cleanup", session_id=self.session_id, turn_id=turn.turn_id)
            return outcome

        # Structured facts first so inline annotations win on conflicts.
        facts: Dict[str, str] = {}
        for key, value in list(reply.facts.items()) + list(annotated.items()):
            key = normalize_fact_key(key)
            value = str(value).strip()
            if key and value:
                facts[key] = value
        for key, value in facts.items():
            self.memory.upsert(key, value)
        self.memory.append_history(Role.AGENT, text)

        outcome.reply_text = text
        outcome.used_fallback_reply = False
        outcome.facts_learned = facts
        return outcome
