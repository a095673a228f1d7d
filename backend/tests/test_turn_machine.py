"""
Tests for the turn state machine (pure reducer).

These tests verify that:
1. Every webhook event maps to the expected steps and effects
2. Polling continues, delivers, apologizes or times out as specified
3. Orphaned calls end politely with no effects
4. No test needs a gateway, a store or a network
"""

import pytest

from engine.script import DEFAULT_SCRIPT
from engine.turn_machine import (
    AppendMessage,
    BeginTurn,
    CallEnded,
    CallPhase,
    CallSnapshot,
    CallStarted,
    Capture,
    CreateConversation,
    EndCall,
    FailPending,
    FailureReason,
    FlowConfig,
    Hangup,
    InternalFailure,
    LaunchAnswer,
    Pause,
    PendingStatus,
    PendingView,
    PollTick,
    RecordingFinished,
    RedirectToPoll,
    Say,
    SpeechCaptured,
    TakePending,
    TranscriptArrived,
    TurnOutcome,
    reduce,
)

CONFIG = FlowConfig()
ORPHAN = CallSnapshot(known=False)
IDLE = CallSnapshot(known=True, turn_counter=0)


def _in_flight(turn_counter: int = 1) -> CallSnapshot:
    return CallSnapshot(
        known=True,
        turn_counter=turn_counter,
        pending=PendingView(status=PendingStatus.WAITING, turn_number=turn_counter, launched=True),
    )


def _awaiting_transcript() -> CallSnapshot:
    return CallSnapshot(
        known=True,
        turn_counter=1,
        pending=PendingView(status=PendingStatus.WAITING, turn_number=1, launched=False),
    )


def _ready(answer: str, turn_counter: int = 1) -> CallSnapshot:
    return CallSnapshot(
        known=True,
        turn_counter=turn_counter,
        pending=PendingView(status=PendingStatus.READY, turn_number=turn_counter, launched=True, result=answer),
    )


def _failed(reason: FailureReason = FailureReason.TIMEOUT) -> CallSnapshot:
    return CallSnapshot(
        known=True,
        turn_counter=1,
        pending=PendingView(status=PendingStatus.FAILED, turn_number=1, launched=True, reason=reason),
    )


def _says(transition):
    return [step.text for step in transition.steps if isinstance(step, Say)]


class TestCallStarted:

    def test_greets_and_captures(self):
        transition = reduce(ORPHAN, CallStarted(), CONFIG)

        assert transition.outcome == TurnOutcome.GREETED
        assert transition.phase == CallPhase.AWAITING_SPEECH
        assert transition.effects == (CreateConversation(),)
        assert transition.steps[0] == Say(DEFAULT_SCRIPT.greeting)
        assert Capture() in transition.steps

    def test_no_input_falls_through_to_goodbye(self):
        """After the capture step, silence leads to a goodbye and hangup."""
        steps = reduce(ORPHAN, CallStarted(), CONFIG).steps
        capture_index = steps.index(Capture())
        assert steps[capture_index + 1] == Say(DEFAULT_SCRIPT.no_input_goodbye)
        assert steps[capture_index + 2] == Hangup()


class TestSpeechCaptured:

    def test_transcript_starts_turn(self):
        transition = reduce(IDLE, SpeechCaptured("What is a will?"), CONFIG)

        assert transition.outcome == TurnOutcome.TURN_STARTED
        assert transition.phase == CallPhase.TURN_IN_FLIGHT
        assert transition.effects == (
            AppendMessage(role="user", content="What is a will?"),
            BeginTurn(),
            LaunchAnswer(),
        )
        assert transition.steps[-2] == Pause(1)
        assert transition.steps[-1] == RedirectToPoll(poll=1, max_polls=40)

    def test_transcript_is_stripped(self):
        transition = reduce(IDLE, SpeechCaptured("  hello  "), CONFIG)
        assert transition.effects[0] == AppendMessage(role="user", content="hello")

    def test_empty_transcript_reprompts_without_state_change(self):
        transition = reduce(IDLE, SpeechCaptured("   "), CONFIG)

        assert transition.outcome == TurnOutcome.TRANSCRIPT_MISSING
        assert transition.effects == ()
        assert transition.steps[0] == Say(DEFAULT_SCRIPT.reprompt)
        assert Capture() in transition.steps

    def test_turn_in_flight_is_not_restarted(self):
        transition = reduce(_in_flight(), SpeechCaptured("Another question"), CONFIG)

        assert transition.outcome == TurnOutcome.TURN_IN_FLIGHT
        assert transition.effects == ()
        assert isinstance(transition.steps[-1], RedirectToPoll)

    def test_orphan_call_hangs_up(self):
        transition = reduce(ORPHAN, SpeechCaptured("hello"), CONFIG)

        assert transition.outcome == TurnOutcome.UNKNOWN_CALL
        assert transition.effects == ()
        assert transition.ends_call

    def test_max_polls_comes_from_config(self):
        transition = reduce(IDLE, SpeechCaptured("hi"), FlowConfig(max_polls=12))
        assert transition.steps[-1] == RedirectToPoll(poll=1, max_polls=12)


class TestPollTick:

    def test_waiting_redirects_to_next_poll(self):
        transition = reduce(_in_flight(), PollTick(poll=1, max_polls=40), CONFIG)

        assert transition.outcome == TurnOutcome.WAITING
        assert transition.phase == CallPhase.POLLING
        assert transition.effects == ()
        assert transition.steps == (Pause(1), RedirectToPoll(poll=2, max_polls=40))

    def test_every_fifth_poll_reassures(self):
        transition = reduce(_in_flight(), PollTick(poll=5, max_polls=40), CONFIG)
        assert _says(transition) == [DEFAULT_SCRIPT.still_processing]
        assert transition.steps[-1] == RedirectToPoll(poll=6, max_polls=40)

    def test_other_polls_are_silent(self):
        transition = reduce(_in_flight(), PollTick(poll=4, max_polls=40), CONFIG)
        assert _says(transition) == []

    def test_ready_delivers_answer(self):
        transition = reduce(_ready("A will is a legal document."), PollTick(poll=2, max_polls=40), CONFIG)

        assert transition.outcome == TurnOutcome.DELIVERED
        assert transition.phase == CallPhase.AWAITING_SPEECH
        assert transition.effects == (
            TakePending(),
            AppendMessage(role="assistant", content="A will is a legal document."),
        )
        says = _says(transition)
        assert says[0] == "A will is a legal document."
        assert says[1] == DEFAULT_SCRIPT.follow_up_for(1)
        assert Capture() in transition.steps

    def test_long_answer_is_spoken_in_chunks(self):
        answer = "A will is a legal document that names who inherits. " * 20
        transition = reduce(_ready(answer), PollTick(poll=3, max_polls=40), CONFIG)

        chunks = _says(transition)[:-2]
        assert len(chunks) >= 3
        assert all(len(chunk) <= 400 for chunk in chunks)
        assert " ".join(chunks).split() == answer.split()

    def test_ready_wins_over_poll_budget(self):
        transition = reduce(_ready("Done."), PollTick(poll=40, max_polls=40), CONFIG)
        assert transition.outcome == TurnOutcome.DELIVERED

    def test_follow_up_rotates_with_turn_counter(self):
        first = _says(reduce(_ready("One.", 1), PollTick(1, 40), CONFIG))[-2]
        second = _says(reduce(_ready("Two.", 2), PollTick(1, 40), CONFIG))[-2]
        assert first != second

    def test_failed_apologizes_and_captures(self):
        transition = reduce(_failed(), PollTick(poll=3, max_polls=40), CONFIG)

        assert transition.outcome == TurnOutcome.FAILED
        assert transition.effects == (TakePending(),)
        assert _says(transition)[0] == DEFAULT_SCRIPT.apology
        assert Capture() in transition.steps

    def test_poll_budget_exhausted_drops_turn(self):
        transition = reduce(_in_flight(), PollTick(poll=40, max_polls=40), CONFIG)

        assert transition.outcome == TurnOutcome.POLL_BUDGET_EXHAUSTED
        assert transition.phase == CallPhase.AWAITING_SPEECH
        assert transition.effects == (TakePending(),)
        assert _says(transition)[0] == DEFAULT_SCRIPT.apology
        assert Capture() in transition.steps

    def test_known_call_without_pending_keeps_waiting(self):
        """A duplicate poll after consumption behaves like nothing pending yet."""
        transition = reduce(IDLE, PollTick(poll=7, max_polls=40), CONFIG)
        assert transition.outcome == TurnOutcome.WAITING
        assert transition.steps[-1] == RedirectToPoll(poll=8, max_polls=40)

    def test_orphan_poll_hangs_up_without_effects(self):
        transition = reduce(ORPHAN, PollTick(poll=1, max_polls=40), CONFIG)

        assert transition.outcome == TurnOutcome.UNKNOWN_CALL
        assert transition.effects == ()
        assert transition.steps == (Say(DEFAULT_SCRIPT.unknown_call), Hangup())


class TestRecordThenTranscribe:

    def test_recording_finished_opens_turn(self):
        transition = reduce(IDLE, RecordingFinished(), CONFIG)

        assert transition.outcome == TurnOutcome.LOOP_STARTED
        assert transition.effects == (BeginTurn(),)
        assert transition.steps[-1] == RedirectToPoll(poll=1, max_polls=40)

    def test_recording_finished_after_transcript_only_polls(self):
        transition = reduce(_in_flight(), RecordingFinished(), CONFIG)
        assert transition.effects == ()
        assert isinstance(transition.steps[-1], RedirectToPoll)

    def test_recording_finished_after_answer_resolved_only_polls(self):
        """The recording action may arrive after the transcript's answer is already ready."""
        transition = reduce(_ready("A will is..."), RecordingFinished(), CONFIG)

        assert transition.effects == ()
        assert isinstance(transition.steps[-1], RedirectToPoll)

    def test_recording_finished_after_answer_failed_only_polls(self):
        transition = reduce(_failed(), RecordingFinished(), CONFIG)
        assert BeginTurn() not in transition.effects

    def test_transcript_attaches_to_waiting_turn(self):
        transition = reduce(_awaiting_transcript(), TranscriptArrived("What is a will?", completed=True), CONFIG)

        assert transition.outcome == TurnOutcome.TRANSCRIPT_ATTACHED
        assert transition.effects == (
            AppendMessage(role="user", content="What is a will?"),
            LaunchAnswer(),
        )
        assert transition.steps == ()

    def test_transcript_before_recording_begins_turn(self):
        transition = reduce(IDLE, TranscriptArrived("What is a will?", completed=True), CONFIG)
        assert BeginTurn() in transition.effects
        assert LaunchAnswer() in transition.effects

    def test_failed_transcription_fails_waiting_turn(self):
        transition = reduce(_awaiting_transcript(), TranscriptArrived("", completed=False), CONFIG)
        assert transition.effects == (FailPending(FailureReason.TRANSCRIPTION_FAILED),)

    def test_failed_transcription_without_turn_is_ignored(self):
        transition = reduce(IDLE, TranscriptArrived("", completed=False), CONFIG)
        assert transition.outcome == TurnOutcome.IGNORED
        assert transition.effects == ()

    def test_transcript_for_orphan_call_is_ignored(self):
        transition = reduce(ORPHAN, TranscriptArrived("hello", completed=True), CONFIG)
        assert transition.outcome == TurnOutcome.UNKNOWN_CALL
        assert transition.effects == ()


class TestEndAndRecovery:

    def test_call_ended_releases_state(self):
        transition = reduce(_in_flight(), CallEnded(), CONFIG)
        assert transition.effects == (EndCall(),)
        assert transition.phase == CallPhase.ENDED

    def test_call_ended_for_unknown_call_is_ignored(self):
        assert reduce(ORPHAN, CallEnded(), CONFIG).effects == ()

    def test_internal_failure_recovers_known_call(self):
        transition = reduce(_in_flight(), InternalFailure(), CONFIG)

        assert transition.outcome == TurnOutcome.RECOVERED
        assert transition.effects == (TakePending(),)
        assert Capture() in transition.steps

    def test_internal_failure_for_unknown_call_hangs_up(self):
        transition = reduce(ORPHAN, InternalFailure(), CONFIG)
        assert transition.ends_call
        assert Capture() not in transition.steps

    def test_unhandled_event_type_raises(self):
        with pytest.raises(TypeError):
            reduce(IDLE, object(), CONFIG)
