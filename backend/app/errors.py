"""
Domain errors for the voice call flow.

Call-path handlers catch these at their boundary and turn them into spoken
instructions; they never reach the gateway as an HTTP error.
"""


class VoiceCallError(Exception):
    """Base class for call flow errors."""

    def __init__(self, call_id: str, message: str = ""):
        self.call_id = call_id
        super().__init__(message or f"{self.__class__.__name__}: {call_id}")


class UnknownCall(VoiceCallError):
    """No conversation and no pending turn exist for the call identifier."""


class TurnInFlight(VoiceCallError):
    """A waiting pending turn already exists for the call."""

