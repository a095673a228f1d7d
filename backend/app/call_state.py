"""
In-memory call state - conversations and pending turns.

Both stores are plain dicts keyed by the gateway's call identifier and owned
by a single VoiceCallService. Every operation is synchronous and never
awaits, so on one event loop no operation can interleave with another.

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from engine.turn_machine import CallPhase, FailureReason, PendingStatus, PendingView

from .errors import TurnInFlight, UnknownCall
from .models import ChatMessage, ConversationDebug, PendingTurnDebug

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConversationRecord:
    """Message history and turn counter for one call."""
    call_id: str
    messages: List[ChatMessage] = field(default_factory=list)
    turn_counter: int = 0
    phase: CallPhase = CallPhase.IDLE
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)


@dataclass
class PendingTurn:
    """An in-flight turn awaiting its answer."""
    call_id: str
    turn_number: int
    status: PendingStatus = PendingStatus.WAITING
    result: Optional[str] = None
    reason: Optional[FailureReason] = None
    launched: bool = False  # answer call started (transcript known)
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    def view(self) -> PendingView:
        return PendingView(
            status=self.status,
            turn_number=self.turn_number,
            launched=self.launched,
            result=self.result,
            reason=self.reason,
        )


class ConversationStore:
    """Per-call conversation records with inactivity expiry."""

    def __init__(self):
        self._records: Dict[str, ConversationRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._records

    def get(self, call_id: str) -> Optional[ConversationRecord]:
        return self._records.get(call_id)

    def get_or_create(self, call_id: str, now: Optional[datetime] = None) -> ConversationRecord:
        """Return the record for a call, creating it on first contact."""
        now = now or utcnow()
        record = self._records.get(call_id)
        if record is None:
            record = ConversationRecord(call_id=call_id, created_at=now, last_activity=now)
            self._records[call_id] = record
            logger.info(f"Conversation created for call {call_id} (active: {len(self._records)})")
        else:
            record.last_activity = now
        return record

    def _require(self, call_id: str) -> ConversationRecord:
        record = self._records.get(call_id)
        if record is None:
            raise UnknownCall(call_id)
        return record

    def touch(self, call_id: str, now: Optional[datetime] = None) -> bool:
        """Refresh last activity. Returns False for an unknown call."""
        record = self._records.get(call_id)
        if record is None:
            return False
        record.last_activity = now or utcnow()
        return True

    def append_message(self, call_id: str, role: str, content: str, now: Optional[datetime] = None) -> ConversationRecord:
        """Append a message to the call's history.

        Raises:
            UnknownCall: If the call has no conversation
            ValueError: If role is not user/assistant
        """
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid message role: {role}")
        record = self._require(call_id)
        record.messages.append(ChatMessage(role=role, content=content))
        record.last_activity = now or utcnow()
        return record

    def next_turn(self, call_id: str) -> int:
        """Increment and return the turn counter."""
        record = self._require(call_id)
        record.turn_counter += 1
        return record.turn_counter

    def set_phase(self, call_id: str, phase: CallPhase) -> None:
        record = self._records.get(call_id)
        if record is not None:
            record.phase = phase

    def remove(self, call_id: str) -> Optional[ConversationRecord]:
        return self._records.pop(call_id, None)

    def sweep_expired(self, now: datetime, ttl: timedelta) -> List[str]:
        """Remove records inactive for longer than ttl. Returns removed call ids."""
        expired = [
            call_id for call_id, record in self._records.items()
            if now - record.last_activity > ttl
        ]
        for call_id in expired:
            del self._records[call_id]
            logger.info(f"[SWEEP] Removed stale conversation for call {call_id}")
        return expired

    def snapshot(self) -> List[ConversationDebug]:
        return [
            ConversationDebug(
                callId=record.call_id,
                phase=record.phase,
                turnCount=record.turn_counter,
                messageCount=len(record.messages),
                createdAt=record.created_at,
                lastActivity=record.last_activity,
            )
            for record in self._records.values()
        ]


class PendingTurnRegistry:
    """At most one pending turn per call.

    waiting -> ready   (resolve, consumed by take)
    waiting -> failed  (fail, consumed by take)
    waiting -> expired (sweep)
    """

    def __init__(self):
        self._turns: Dict[str, PendingTurn] = {}

    def __len__(self) -> int:
        return len(self._turns)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._turns

    def get(self, call_id: str) -> Optional[PendingTurn]:
        return self._turns.get(call_id)

    def begin(self, call_id: str, turn_number: int, now: Optional[datetime] = None) -> PendingTurn:
        """Open a waiting turn. A resolved but unconsumed turn is replaced.

        Raises:
            TurnInFlight: If a waiting turn already exists for the call
        """
        existing = self._turns.get(call_id)
        if existing is not None and existing.status == PendingStatus.WAITING:
            raise TurnInFlight(call_id, f"Turn {existing.turn_number} already in flight for call {call_id}")

        turn = PendingTurn(call_id=call_id, turn_number=turn_number, created_at=now or utcnow())
        self._turns[call_id] = turn
        logger.info(f"[TURN] Pending turn {turn_number} opened for call {call_id}")
        return turn

    def mark_launched(self, call_id: str) -> Optional[PendingTurn]:
        turn = self._turns.get(call_id)
        if turn is not None and turn.status == PendingStatus.WAITING:
            turn.launched = True
            return turn
        return None

    def _waiting_turn(self, call_id: str, turn_number: Optional[int]) -> Optional[PendingTurn]:
        turn = self._turns.get(call_id)
        if turn is None or turn.status != PendingStatus.WAITING:
            return None
        if turn_number is not None and turn.turn_number != turn_number:
            return None
        return turn

    def resolve(self, call_id: str, answer: str, turn_number: Optional[int] = None, now: Optional[datetime] = None) -> bool:
        """waiting -> ready. Returns False if there is no matching waiting turn."""
        if not answer or not answer.strip():
            raise ValueError("A ready turn needs a non-empty answer")

        turn = self._waiting_turn(call_id, turn_number)
        if turn is None:
            logger.info(f"[TURN] Late answer for call {call_id} (turn {turn_number}) discarded")
            return False

        turn.status = PendingStatus.READY
        turn.result = answer
        turn.resolved_at = now or utcnow()
        return True

    def fail(self, call_id: str, reason: FailureReason, turn_number: Optional[int] = None, now: Optional[datetime] = None) -> bool:
        """waiting -> failed. Returns False if there is no matching waiting turn."""
        turn = self._waiting_turn(call_id, turn_number)
        if turn is None:
            logger.info(f"[TURN] Late failure ({reason.value}) for call {call_id} (turn {turn_number}) discarded")
            return False

        turn.status = PendingStatus.FAILED
        turn.result = None
        turn.reason = reason
        turn.resolved_at = now or utcnow()
        return True

    def take(self, call_id: str) -> Optional[PendingTurn]:
        """Read and delete the turn. None when nothing is pending."""
        return self._turns.pop(call_id, None)

    def sweep_expired(self, now: datetime, ttl: timedelta) -> List[str]:
        """Remove turns created longer than ttl ago. Returns removed call ids."""
        expired = [
            call_id for call_id, turn in self._turns.items()
            if now - turn.created_at > ttl
        ]
        for call_id in expired:
            del self._turns[call_id]
            logger.info(f"[SWEEP] Removed stale pending turn for call {call_id}")
        return expired

    def snapshot(self) -> List[PendingTurnDebug]:
        return [
            PendingTurnDebug(
                callId=turn.call_id,
                turnNumber=turn.turn_number,
                status=turn.status,
                launched=turn.launched,
                createdAt=turn.created_at,
                resolvedAt=turn.resolved_at,
                failureReason=turn.reason,
            )
            for turn in self._turns.values()
        ]
