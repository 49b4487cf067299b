"""
Single-flight turn gate.

`TurnState` is the one flag that says whether a reply is in flight for a
session. Transitions are checked against an explicit table; acquiring a busy
gate is a silent no-op because duplicate finalization triggers are expected.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional

import structlog

logger = structlog.get_logger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"  # reply generation and/or synthesis in flight
    DELIVERING = "delivering"  # playback has been instructed


TRANSITIONS: Dict[TurnState, FrozenSet[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.PROCESSING}),
    TurnState.PROCESSING: frozenset({TurnState.DELIVERING, TurnState.IDLE}),
    TurnState.DELIVERING: frozenset({TurnState.IDLE}),
}


class TurnStateError(Exception):
    """Raised on a transition the table does not allow (a programming error)."""
    pass


class TurnGate:
    """Owns the `TurnState` of one session."""

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self._state = TurnState.IDLE
        self._owner: Optional[int] = None

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_idle(self) -> bool:
        return self._state == TurnState.IDLE

    @property
    def owner(self) -> Optional[int]:
        """Id of the turn holding the gate, if any."""
        return self._owner

    def try_acquire(self, owner: int) -> bool:
        """IDLE -> PROCESSING. Returns False (and changes nothing) if busy."""
        if self._state != TurnState.IDLE:
            logger.debug(
                "Turn gate busy, ignoring",
                session_id=self.session_id,
                state=self._state.value,
                owner=self._owner,
                requested_by=owner,
            )
            return False
        self._transition(TurnState.PROCESSING)
        self._owner = owner
        return True

    def mark_delivering(self) -> None:
        self._transition(TurnState.DELIVERING)

    def release(self) -> None:
        """Return to IDLE from whatever in-flight state the turn reached."""
        if self._state == TurnState.IDLE:
            return
        self._transition(TurnState.IDLE)
        self._owner = None

    def _transition(self, target: TurnState) -> None:
        if target not in TRANSITIONS[self._state]:
            raise TurnStateError(
                f"Illegal turn state transition {self._state.value} -> {target.value}"
            )
        logger.debug(
            "Turn state",
            session_id=self.session_id,
            from_state=self._state.value,
            to_state=target.value,
            owner=self._owner,
        )
        self._state = target
