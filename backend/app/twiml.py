"""
TwiML rendering for transition steps.

The turn machine decides WHAT the caller hears; this module only turns
those steps into Twilio markup.
"""

import logging
from typing import Iterable, Optional
from urllib.parse import urlencode

from fastapi.responses import Response
from twilio.twiml.voice_response import VoiceResponse

from engine.turn_machine import Capture, Hangup, Pause, RedirectToPoll, Say, Step

from .config import VoiceSettings

logger = logging.getLogger(__name__)

# Webhook paths the markup points back to
SPEECH_CAPTURED_PATH = "/speech-captured"
RECORDING_COMPLETE_PATH = "/recording-complete"
TRANSCRIPTION_CALLBACK_PATH = "/transcription-callback"
POLL_TURN_PATH = "/poll-turn"

# Record verb limits (seconds)
RECORD_MAX_LENGTH = 60
RECORD_SILENCE_TIMEOUT = 2


def callback_url(settings: VoiceSettings, path: str, **params) -> str:
    """Absolute (or relative, when no base is set) webhook URL with query params."""
    url = f"{settings.webhook_base_url}{path}"
    if params:
        url = f"{url}?{urlencode(params)}"
    return url


def render_steps(call_id: Optional[str], steps: Iterable[Step], settings: VoiceSettings) -> str:
    """Render steps in order into a TwiML document."""
    response = VoiceResponse()

    for step in steps:
        if isinstance(step, Say):
            response.say(step.text, voice=settings.voice, language=settings.language)
        elif isinstance(step, Pause):
            response.pause(length=step.seconds)
        elif isinstance(step, Capture):
            _append_capture(response, call_id, settings)
        elif isinstance(step, RedirectToPoll):
            url = callback_url(
                settings,
                POLL_TURN_PATH,
                callId=call_id or "",
                poll=step.poll,
                maxPolls=step.max_polls,
            )
            response.redirect(url, method="POST")
        elif isinstance(step, Hangup):
            response.hangup()
        else:
            raise TypeError(f"Unknown step: {step!r}")

    return str(response)


def _append_capture(response: VoiceResponse, call_id: Optional[str], settings: VoiceSettings) -> None:
    if settings.capture_mode == "record":
        response.record(
            action=callback_url(settings, RECORDING_COMPLETE_PATH, callId=call_id or ""),
            method="POST",
            max_length=RECORD_MAX_LENGTH,
            timeout=RECORD_SILENCE_TIMEOUT,
            transcribe=True,
            transcribe_callback=callback_url(settings, TRANSCRIPTION_CALLBACK_PATH),
            play_beep=True,
        )
        return

    response.gather(
        input="speech",
        action=callback_url(settings, SPEECH_CAPTURED_PATH, callId=call_id or ""),
        method="POST",
        speech_timeout="auto",
        action_on_empty_result=True,
        language=settings.language,
    )


def twiml_response(xml: str) -> Response:
    return Response(content=xml, media_type="application/xml")
