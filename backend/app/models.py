"""
Pydantic models for the voice backend API.
Python 3.9 compatible - uses typing.List, typing.Optional
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from engine.turn_machine import CallPhase, FailureReason, PendingStatus


class ChatMessage(BaseModel):
    role: str  # "user" or "assistant"
    content: str


class WebhookAck(BaseModel):
    """Plain acknowledgement for gateway callbacks that expect no markup."""
    status: str = "ok"


class ConversationDebug(BaseModel):
    """Conversation metadata - never message content."""
    callId: str
    phase: CallPhase
    turnCount: int
    messageCount: int
    createdAt: datetime
    lastActivity: datetime


class PendingTurnDebug(BaseModel):
    callId: str
    turnNumber: int
    status: PendingStatus
    launched: bool
    createdAt: datetime
    resolvedAt: Optional[datetime] = None
    failureReason: Optional[FailureReason] = None


class DebugStateResponse(BaseModel):
    """Read-only snapshot of the in-memory stores."""
    conversationCount: int
    pendingCount: int
    inFlightTasks: int
    conversations: List[ConversationDebug] = Field(default_factory=list)
    pendingTurns: List[PendingTurnDebug] = Field(default_factory=list)
