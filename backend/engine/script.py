"""
Spoken lines used by the call flow.
"""
from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class CallScript:
    """Everything the assistant says that is not an AI answer."""
    greeting: str
    follow_up_prompts: Tuple[str, ...]
    hold_fillers: Tuple[str, ...]
    still_processing: str
    apology: str
    reprompt: str
    no_input_goodbye: str
    unknown_call: str
    technical_goodbye: str

    def follow_up_for(self, turn_counter: int) -> str:
        """Follow-up prompt for a turn (turns count from 1)."""
        index = (max(turn_counter, 1) - 1) % len(self.follow_up_prompts)
        return self.follow_up_prompts[index]

    def hold_filler_for(self, turn_counter: int) -> str:
        return self.hold_fillers[turn_counter % len(self.hold_fillers)]


DEFAULT_SCRIPT = CallScript(
    greeting="Welcome to the Ushauri Legal Assistant. How may I help you today?",
    follow_up_prompts=(
        "Do you have another legal question? Please speak after the beep.",
        "Is there anything else I can help you with?",
        "What else would you like to know?",
    ),
    hold_fillers=(
        "One moment while I look into that.",
        "Let me check that for you.",
        "Just a moment.",
    ),
    still_processing="Still processing your question, please continue to hold.",
    apology="I apologize for the technical issue. Please repeat your question after the beep.",
    reprompt="I'm sorry, I couldn't understand what you said. Could you please repeat that?",
    no_input_goodbye="I didn't hear anything. Please call back when you're ready to speak. Goodbye.",
    unknown_call="I'm sorry, but I can't find your conversation. Please call again. Goodbye.",
    technical_goodbye="I'm sorry, but I encountered an error processing your request. Please try again later.",
)
