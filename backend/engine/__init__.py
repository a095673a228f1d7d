"""
Call flow engine - response chunker and turn state machine.
"""
from .chunker import (
    MAX_CHUNK_LENGTH,
    chunk_text,
    split_sentences,
)
from .script import (
    CallScript,
    DEFAULT_SCRIPT,
)
from .turn_machine import (
    CallPhase,
    CallSnapshot,
    FailureReason,
    FlowConfig,
    PendingStatus,
    PendingView,
    Transition,
    TurnOutcome,
    reduce,
)

__all__ = [
    "MAX_CHUNK_LENGTH",
    "chunk_text",
    "split_sentences",
    "CallScript",
    "DEFAULT_SCRIPT",
    "CallPhase",
    "CallSnapshot",
    "FailureReason",
    "FlowConfig",
    "PendingStatus",
    "PendingView",
    "Transition",
    "TurnOutcome",
    "reduce",
]
