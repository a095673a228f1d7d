"""
Turn state machine for the hold-and-poll voice protocol.

    (snapshot, event) -> Transition(phase, steps, effects, outcome)

The telephony gateway needs an answer to every webhook within seconds, while
an AI answer may take much longer. Each webhook is turned into an event; the
reducer looks at a read-only snapshot of the call's stores and decides:
- steps: what the caller hears next (say / pause / capture / redirect / hangup)
- effects: store mutations the service applies afterwards

Rules:
- Pure: no I/O, no clocks, no store access.
- Polling is driven by the gateway's redirects, never by recursion here.
- A call with neither a conversation nor a pending turn is orphaned and ends.

NO network calls are made in this module. All logic is deterministic.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

from .chunker import MAX_CHUNK_LENGTH, chunk_text
from .script import DEFAULT_SCRIPT, CallScript


class CallPhase(str, Enum):
    """Where a call sits in the protocol."""
    IDLE = "IDLE"
    AWAITING_SPEECH = "AWAITING_SPEECH"
    TURN_IN_FLIGHT = "TURN_IN_FLIGHT"
    POLLING = "POLLING"
    DELIVERING = "DELIVERING"
    ENDED = "ENDED"


class PendingStatus(str, Enum):
    WAITING = "waiting"
    READY = "ready"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a pending turn failed."""
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport-error"
    MALFORMED_RESPONSE = "malformed-response"
    TRANSCRIPTION_FAILED = "transcription-failed"


class TurnOutcome(str, Enum):
    """What a transition did, for logging and tests."""
    GREETED = "GREETED"
    TRANSCRIPT_MISSING = "TRANSCRIPT_MISSING"
    TURN_STARTED = "TURN_STARTED"
    TRANSCRIPT_ATTACHED = "TRANSCRIPT_ATTACHED"
    TURN_IN_FLIGHT = "TURN_IN_FLIGHT"
    LOOP_STARTED = "LOOP_STARTED"
    WAITING = "WAITING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    POLL_BUDGET_EXHAUSTED = "POLL_BUDGET_EXHAUSTED"
    UNKNOWN_CALL = "UNKNOWN_CALL"
    RECOVERED = "RECOVERED"
    CALL_ENDED = "CALL_ENDED"
    IGNORED = "IGNORED"


# =============================================================================
# STEPS (what the gateway is told to do)
# =============================================================================

@dataclass(frozen=True)
class Say:
    text: str


@dataclass(frozen=True)
class Pause:
    seconds: int = 1


@dataclass(frozen=True)
class Capture:
    """Listen for the caller's next utterance."""


@dataclass(frozen=True)
class RedirectToPoll:
    poll: int
    max_polls: int


@dataclass(frozen=True)
class Hangup:
    pass


Step = Union[Say, Pause, Capture, RedirectToPoll, Hangup]


# =============================================================================
# EFFECTS (store mutations applied by the service)
# =============================================================================

@dataclass(frozen=True)
class CreateConversation:
    pass


@dataclass(frozen=True)
class AppendMessage:
    role: str
    content: str


@dataclass(frozen=True)
class BeginTurn:
    """Increment the turn counter and open a waiting pending turn."""


@dataclass(frozen=True)
class LaunchAnswer:
    """Start the background answer call for the waiting pending turn."""


@dataclass(frozen=True)
class FailPending:
    reason: FailureReason


@dataclass(frozen=True)
class TakePending:
    """Consume (or drop) the pending turn."""


@dataclass(frozen=True)
class EndCall:
    pass


Effect = Union[CreateConversation, AppendMessage, BeginTurn, LaunchAnswer, FailPending, TakePending, EndCall]


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class CallStarted:
    pass


@dataclass(frozen=True)
class SpeechCaptured:
    transcript: str


@dataclass(frozen=True)
class RecordingFinished:
    pass


@dataclass(frozen=True)
class TranscriptArrived:
    text: str
    completed: bool


@dataclass(frozen=True)
class PollTick:
    poll: int
    max_polls: int


@dataclass(frozen=True)
class CallEnded:
    pass


@dataclass(frozen=True)
class InternalFailure:
    pass


Event = Union[CallStarted, SpeechCaptured, RecordingFinished, TranscriptArrived, PollTick, CallEnded, InternalFailure]


# =============================================================================
# SNAPSHOT / CONFIG / RESULT
# =============================================================================

@dataclass(frozen=True)
class PendingView:
    """Read-only view of a pending turn."""
    status: PendingStatus
    turn_number: int
    launched: bool = False
    result: Optional[str] = None
    reason: Optional[FailureReason] = None


@dataclass(frozen=True)
class CallSnapshot:
    """Read-only view of a call's stores."""
    known: bool
    turn_counter: int = 0
    pending: Optional[PendingView] = None

    @property
    def is_orphan(self) -> bool:
        return not self.known and self.pending is None

    @property
    def awaiting_transcript(self) -> bool:
        """Poll loop started before the transcript arrived."""
        return (
            self.pending is not None
            and self.pending.status == PendingStatus.WAITING
            and not self.pending.launched
        )

    @property
    def turn_in_flight(self) -> bool:
        return (
            self.pending is not None
            and self.pending.status == PendingStatus.WAITING
            and self.pending.launched
        )


@dataclass(frozen=True)
class FlowConfig:
    script: CallScript = DEFAULT_SCRIPT
    max_polls: int = 40
    poll_pause_seconds: int = 1
    reassure_every: int = 5
    chunk_max_chars: int = MAX_CHUNK_LENGTH


@dataclass(frozen=True)
class Transition:
    phase: CallPhase
    outcome: TurnOutcome
    steps: Tuple[Step, ...] = ()
    effects: Tuple[Effect, ...] = ()

    @property
    def ends_call(self) -> bool:
        return any(isinstance(step, Hangup) for step in self.steps)


# =============================================================================
# REDUCER
# =============================================================================

def reduce(snapshot: CallSnapshot, event: Event, config: FlowConfig = FlowConfig()) -> Transition:
    """Decide the next transition for a call. Every event type is handled."""
    if isinstance(event, CallStarted):
        return _on_call_started(snapshot, config)
    if isinstance(event, SpeechCaptured):
        return _on_speech_captured(snapshot, event, config)
    if isinstance(event, RecordingFinished):
        return _on_recording_finished(snapshot, config)
    if isinstance(event, TranscriptArrived):
        return _on_transcript_arrived(snapshot, event)
    if isinstance(event, PollTick):
        return _on_poll_tick(snapshot, event, config)
    if isinstance(event, CallEnded):
        return _on_call_ended(snapshot)
    if isinstance(event, InternalFailure):
        return _on_internal_failure(snapshot, config)
    raise TypeError(f"Unhandled event type: {type(event).__name__}")


def capture_steps(script: CallScript) -> Tuple[Step, ...]:
    """Capture the caller's speech; if nothing is heard, say goodbye."""
    return (Capture(), Say(script.no_input_goodbye), Hangup())


def speak_answer(answer: str, max_len: int, pause_seconds: int = 1) -> Tuple[Step, ...]:
    """Say an answer chunk by chunk with a short pause after each chunk."""
    steps = []
    for chunk in chunk_text(answer, max_len):
        text = chunk.strip()
        if not text:
            continue
        steps.append(Say(text))
        steps.append(Pause(pause_seconds))
    return tuple(steps)


def _unknown_call(script: CallScript) -> Transition:
    return Transition(
        phase=CallPhase.ENDED,
        outcome=TurnOutcome.UNKNOWN_CALL,
        steps=(Say(script.unknown_call), Hangup()),
    )


def _redirect_to_poll(config: FlowConfig) -> Tuple[Step, ...]:
    return (Pause(config.poll_pause_seconds), RedirectToPoll(poll=1, max_polls=config.max_polls))


def _accept_transcript(snapshot: CallSnapshot, text: str) -> Tuple[TurnOutcome, Tuple[Effect, ...]]:
    effects: Tuple[Effect, ...] = ()
    if not snapshot.known:
        effects += (CreateConversation(),)
    effects += (AppendMessage(role="user", content=text),)

    if snapshot.awaiting_transcript:
        return TurnOutcome.TRANSCRIPT_ATTACHED, effects + (LaunchAnswer(),)
    return TurnOutcome.TURN_STARTED, effects + (BeginTurn(), LaunchAnswer())


def _on_call_started(snapshot: CallSnapshot, config: FlowConfig) -> Transition:
    script = config.script
    return Transition(
        phase=CallPhase.AWAITING_SPEECH,
        outcome=TurnOutcome.GREETED,
        steps=(Say(script.greeting),) + capture_steps(script),
        effects=(CreateConversation(),),
    )


def _on_speech_captured(snapshot: CallSnapshot, event: SpeechCaptured, config: FlowConfig) -> Transition:
    script = config.script
    if snapshot.is_orphan:
        return _unknown_call(script)

    text = (event.transcript or "").strip()
    if not text:
        return Transition(
            phase=CallPhase.AWAITING_SPEECH,
            outcome=TurnOutcome.TRANSCRIPT_MISSING,
            steps=(Say(script.reprompt),) + capture_steps(script),
        )

    if snapshot.turn_in_flight:
        # Keep the caller holding on the turn already running
        return Transition(
            phase=CallPhase.POLLING,
            outcome=TurnOutcome.TURN_IN_FLIGHT,
            steps=_redirect_to_poll(config),
        )

    outcome, effects = _accept_transcript(snapshot, text)
    filler = script.hold_filler_for(snapshot.turn_counter + 1)
    return Transition(
        phase=CallPhase.TURN_IN_FLIGHT,
        outcome=outcome,
        steps=(Say(filler),) + _redirect_to_poll(config),
        effects=effects,
    )


def _on_recording_finished(snapshot: CallSnapshot, config: FlowConfig) -> Transition:
    if snapshot.is_orphan:
        return _unknown_call(config.script)

    pending = snapshot.pending
    if pending is not None and (
        pending.status == PendingStatus.WAITING
        or (pending.launched and pending.turn_number == snapshot.turn_counter)
    ):
        # Transcript beat the recording action; the turn is already open or answered
        return Transition(
            phase=CallPhase.POLLING,
            outcome=TurnOutcome.LOOP_STARTED,
            steps=_redirect_to_poll(config),
        )

    effects: Tuple[Effect, ...] = ()
    if not snapshot.known:
        effects += (CreateConversation(),)
    return Transition(
        phase=CallPhase.POLLING,
        outcome=TurnOutcome.LOOP_STARTED,
        steps=_redirect_to_poll(config),
        effects=effects + (BeginTurn(),),
    )


def _on_transcript_arrived(snapshot: CallSnapshot, event: TranscriptArrived) -> Transition:
    if snapshot.is_orphan:
        return Transition(phase=CallPhase.ENDED, outcome=TurnOutcome.UNKNOWN_CALL)

    text = (event.text or "").strip()
    if not event.completed or not text:
        if snapshot.awaiting_transcript:
            return Transition(
                phase=CallPhase.POLLING,
                outcome=TurnOutcome.TRANSCRIPT_MISSING,
                effects=(FailPending(FailureReason.TRANSCRIPTION_FAILED),),
            )
        return Transition(phase=CallPhase.POLLING, outcome=TurnOutcome.IGNORED)

    if snapshot.turn_in_flight:
        return Transition(phase=CallPhase.TURN_IN_FLIGHT, outcome=TurnOutcome.TURN_IN_FLIGHT)

    outcome, effects = _accept_transcript(snapshot, text)
    return Transition(phase=CallPhase.TURN_IN_FLIGHT, outcome=outcome, effects=effects)


def _on_poll_tick(snapshot: CallSnapshot, event: PollTick, config: FlowConfig) -> Transition:
    script = config.script
    if snapshot.is_orphan:
        return _unknown_call(script)

    pending = snapshot.pending

    if pending is not None and pending.status == PendingStatus.READY and pending.result:
        steps = speak_answer(pending.result, config.chunk_max_chars)
        steps += (Say(script.follow_up_for(snapshot.turn_counter)),) + capture_steps(script)
        return Transition(
            phase=CallPhase.AWAITING_SPEECH,
            outcome=TurnOutcome.DELIVERED,
            steps=steps,
            effects=(TakePending(), AppendMessage(role="assistant", content=pending.result)),
        )

    if pending is not None and pending.status == PendingStatus.FAILED:
        return Transition(
            phase=CallPhase.AWAITING_SPEECH,
            outcome=TurnOutcome.FAILED,
            steps=(Say(script.apology),) + capture_steps(script),
            effects=(TakePending(),),
        )

    if event.poll >= event.max_polls:
        # Never leave the caller stuck: drop the stale turn and listen again
        return Transition(
            phase=CallPhase.AWAITING_SPEECH,
            outcome=TurnOutcome.POLL_BUDGET_EXHAUSTED,
            steps=(Say(script.apology),) + capture_steps(script),
            effects=(TakePending(),),
        )

    steps: Tuple[Step, ...] = (Pause(config.poll_pause_seconds),)
    if config.reassure_every > 0 and event.poll % config.reassure_every == 0:
        steps += (Say(script.still_processing),)
    steps += (RedirectToPoll(poll=event.poll + 1, max_polls=event.max_polls),)
    return Transition(phase=CallPhase.POLLING, outcome=TurnOutcome.WAITING, steps=steps)


def _on_call_ended(snapshot: CallSnapshot) -> Transition:
    if snapshot.is_orphan:
        return Transition(phase=CallPhase.ENDED, outcome=TurnOutcome.IGNORED)
    return Transition(phase=CallPhase.ENDED, outcome=TurnOutcome.CALL_ENDED, effects=(EndCall(),))


def _on_internal_failure(snapshot: CallSnapshot, config: FlowConfig) -> Transition:
    script = config.script
    if snapshot.is_orphan:
        return Transition(
            phase=CallPhase.ENDED,
            outcome=TurnOutcome.UNKNOWN_CALL,
            steps=(Say(script.technical_goodbye), Hangup()),
        )
    return Transition(
        phase=CallPhase.AWAITING_SPEECH,
        outcome=TurnOutcome.RECOVERED,
        steps=(Say(script.apology),) + capture_steps(script),
        effects=(TakePending(),),
    )
