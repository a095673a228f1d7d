"""
Voice Call Service - owns all per-call state for one process.

This service:
1. Holds the conversation store and the pending-turn registry
2. Feeds webhook events through the turn machine and applies its effects
3. Launches answer calls as background tasks whose completion callback
   resolves or fails the pending turn
4. Sweeps expired conversations and pending turns on a fixed interval

State is in-memory and single-process. Shutdown cancels in-flight answer
calls on a best-effort basis after a short grace period.

Python 3.9 compatible - uses typing.Dict, typing.Optional, typing.Set
"""

import asyncio
import functools
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from engine.script import DEFAULT_SCRIPT, CallScript
from engine.turn_machine import (
    AppendMessage,
    BeginTurn,
    CallPhase,
    CallSnapshot,
    CreateConversation,
    EndCall,
    Event,
    FailPending,
    FailureReason,
    FlowConfig,
    LaunchAnswer,
    TakePending,
    Transition,
    TurnOutcome,
    reduce,
)

from .answer_client import Answer, AnswerClient, AnswerResult, build_answer_client
from .call_state import ConversationStore, PendingTurnRegistry, utcnow
from .config import VoiceSettings
from .errors import TurnInFlight
from .models import DebugStateResponse

logger = logging.getLogger(__name__)

# Seconds in-flight answer calls get to finish on shutdown
SHUTDOWN_GRACE_SECONDS = 2.0


class VoiceCallService:
    """Single owner of conversation and pending-turn state."""

    def __init__(
        self,
        settings: VoiceSettings,
        answer_client: Optional[AnswerClient] = None,
        script: CallScript = DEFAULT_SCRIPT,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.answer_client = answer_client
        self.clock = clock
        self.conversations = ConversationStore()
        self.pending = PendingTurnRegistry()
        self.flow = FlowConfig(
            script=script,
            max_polls=settings.max_polls,
            poll_pause_seconds=settings.poll_pause_seconds,
            reassure_every=settings.reassure_every,
            chunk_max_chars=settings.chunk_max_chars,
        )
        self._tasks: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Build the answer backend (fail fast) and start the sweeper."""
        if self.answer_client is None:
            self.answer_client = build_answer_client(self.settings)
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Voice call service started (answer backend: {self.answer_client.name}, "
            f"capture mode: {self.settings.capture_mode}, sweep every {self.settings.sweep_interval_seconds}s)"
        )

    async def stop(self, grace_seconds: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """Stop sweeping, let answer calls finish briefly, cancel the rest."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        remaining = await self.drain(timeout=grace_seconds)
        if remaining:
            logger.warning(f"Cancelling {remaining} in-flight answer call(s) on shutdown")
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.answer_client is not None:
            await self.answer_client.close()

        logger.info(
            f"Voice call service stopped with {len(self.conversations)} conversation(s) "
            f"and {len(self.pending)} pending turn(s) in memory"
        )

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for in-flight answer calls. Returns how many are still running."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
            # Let completion callbacks run
            await asyncio.sleep(0)
        return len(self._tasks)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def is_known(self, call_id: Optional[str]) -> bool:
        return bool(call_id) and (call_id in self.conversations or call_id in self.pending)

    def snapshot(self, call_id: str) -> CallSnapshot:
        record = self.conversations.get(call_id)
        turn = self.pending.get(call_id)
        return CallSnapshot(
            known=record is not None,
            turn_counter=record.turn_counter if record else 0,
            pending=turn.view() if turn else None,
        )

    def handle(self, call_id: str, event: Event) -> Transition:
        """Run one event through the turn machine and apply its effects."""
        now = self.clock()
        snapshot = self.snapshot(call_id)
        transition = reduce(snapshot, event, self.flow)

        self.conversations.touch(call_id, now)
        self._apply(call_id, transition, now)
        if transition.phase != CallPhase.ENDED:
            self.conversations.set_phase(call_id, transition.phase)

        logger.info(
            f"[{type(event).__name__}] call {call_id}: {transition.outcome.value} -> {transition.phase.value}"
        )
        return transition

    def _apply(self, call_id: str, transition: Transition, now: datetime) -> None:
        for effect in transition.effects:
            if isinstance(effect, CreateConversation):
                self.conversations.get_or_create(call_id, now)
            elif isinstance(effect, AppendMessage):
                self.conversations.append_message(call_id, effect.role, effect.content, now)
            elif isinstance(effect, BeginTurn):
                record = self.conversations.get_or_create(call_id, now)
                try:
                    self.pending.begin(call_id, record.turn_counter + 1, now)
                except TurnInFlight as e:
                    # Never start a second answer call for the same call
                    logger.warning(f"[TURN] {e} - ignoring new turn")
                    return
                self.conversations.next_turn(call_id)
            elif isinstance(effect, LaunchAnswer):
                self._launch_answer(call_id)
            elif isinstance(effect, FailPending):
                self.pending.fail(call_id, effect.reason, now=now)
            elif isinstance(effect, TakePending):
                taken = self.pending.take(call_id)
                if taken is not None and transition.outcome == TurnOutcome.POLL_BUDGET_EXHAUSTED:
                    logger.warning(
                        f"[POLL] Poll budget exhausted for call {call_id}, dropped turn {taken.turn_number} "
                        f"({taken.status.value})"
                    )
            elif isinstance(effect, EndCall):
                self.conversations.remove(call_id)
                self.pending.take(call_id)
                logger.info(f"Call {call_id} ended, state released")
            else:
                raise TypeError(f"Unknown effect: {effect!r}")

    # ------------------------------------------------------------------
    # Background answer calls
    # ------------------------------------------------------------------

    def _launch_answer(self, call_id: str) -> None:
        turn = self.pending.mark_launched(call_id)
        if turn is None:
            logger.warning(f"[TURN] No waiting turn to launch for call {call_id}")
            return

        if self.answer_client is None:
            logger.error("Answer client not initialized - failing turn")
            self.pending.fail(call_id, FailureReason.TRANSPORT_ERROR, turn.turn_number, self.clock())
            return

        record = self.conversations.get(call_id)
        history = list(record.messages) if record else []

        task = asyncio.create_task(self.answer_client.fetch_answer(history))
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._complete_turn, call_id, turn.turn_number))
        logger.info(f"[TURN] Answer call launched for call {call_id}, turn {turn.turn_number}")

    def _complete_turn(self, call_id: str, turn_number: int, task: "asyncio.Task[AnswerResult]") -> None:
        """Completion callback: resolve or fail the pending turn."""
        self._tasks.discard(task)
        now = self.clock()

        if task.cancelled():
            logger.info(f"[TURN] Answer call for call {call_id}, turn {turn_number} cancelled")
            return

        error = task.exception()
        if error is not None:
            logger.error(f"[TURN] Answer call for call {call_id} raised {error!r}")
            self.pending.fail(call_id, FailureReason.TRANSPORT_ERROR, turn_number, now)
            return

        result = task.result()
        if isinstance(result, Answer):
            if self.pending.resolve(call_id, result.text, turn_number, now):
                logger.info(f"[TURN] Answer ready for call {call_id}, turn {turn_number}")
        else:
            if self.pending.fail(call_id, result.reason, turn_number, now):
                logger.warning(
                    f"[TURN] Answer failed for call {call_id}, turn {turn_number}: {result.reason.value}"
                )

    # ------------------------------------------------------------------
    # Sweeps and debug
    # ------------------------------------------------------------------

    def sweep_expired(self, now: Optional[datetime] = None) -> Dict[str, List[str]]:
        """Remove stale records from both stores. Errors are logged, never raised."""
        now = now or self.clock()
        removed: Dict[str, List[str]] = {"conversations": [], "pendingTurns": []}

        try:
            removed["conversations"] = self.conversations.sweep_expired(now, self.settings.conversation_ttl)
        except Exception:
            logger.exception("[SWEEP] Conversation sweep failed")

        try:
            removed["pendingTurns"] = self.pending.sweep_expired(now, self.settings.pending_ttl)
        except Exception:
            logger.exception("[SWEEP] Pending turn sweep failed")

        if removed["conversations"] or removed["pendingTurns"]:
            logger.info(
                f"[SWEEP] Removed {len(removed['conversations'])} conversation(s), "
                f"{len(removed['pendingTurns'])} pending turn(s)"
            )
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            self.sweep_expired()

    def debug_state(self) -> DebugStateResponse:
        return DebugStateResponse(
            conversationCount=len(self.conversations),
            pendingCount=len(self.pending),
            inFlightTasks=self.in_flight,
            conversations=self.conversations.snapshot(),
            pendingTurns=self.pending.snapshot(),
        )
