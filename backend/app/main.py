"""
Ushauri Voice Backend - FastAPI Application

Bridges Twilio voice webhooks to a remote AI answer service.

Every call-path webhook answers synchronously with TwiML. Slow answers are
handled with a filler/poll pattern:
1. Speech captured -> start the answer call in the background
2. Return filler TwiML with a pause and redirect to /poll-turn
3. /poll-turn re-enters until the answer is ready, failed, or the poll
   budget runs out

Call-path webhooks NEVER return an HTTP error - the caller cannot see one.

Python 3.9 compatible.
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Form, Query, Request
from fastapi.exception_handlers import http_exception_handler, request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from engine.turn_machine import (
    CallEnded,
    CallSnapshot,
    CallStarted,
    Hangup,
    InternalFailure,
    PollTick,
    RecordingFinished,
    Say,
    SpeechCaptured,
    TranscriptArrived,
    reduce,
)

from .config import load_environment, load_settings, mask_key
from .models import DebugStateResponse, WebhookAck
from .twiml import POLL_TURN_PATH, RECORDING_COMPLETE_PATH, SPEECH_CAPTURED_PATH, render_steps, twiml_response
from .voice_service import VoiceCallService

VERSION = "1.0.0"

START_CALL_PATH = "/start-call"
CALL_PATHS = (START_CALL_PATH, SPEECH_CAPTURED_PATH, RECORDING_COMPLETE_PATH, POLL_TURN_PATH)

# Twilio call statuses that mean the call is over
TERMINAL_CALL_STATUSES = {"completed", "busy", "failed", "no-answer", "canceled"}

MISSING_ENDPOINT_MESSAGE = "I'm sorry, but this endpoint does not exist. Goodbye."

# Served when even the fallback cannot be rendered
LAST_RESORT_TWIML = """<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Say voice="alice" language="en-US">I'm sorry, something went wrong. Goodbye.</Say>
    <Hangup/>
</Response>"""

load_environment()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG", "false").lower() == "true" else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

router = APIRouter()


def get_voice_service(request: Request) -> VoiceCallService:
    return request.app.state.voice_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - start and stop the voice call service."""
    service: VoiceCallService = app.state.voice_service
    settings = service.settings

    logger.info("=" * 60)
    logger.info("Initializing Ushauri Voice Backend")
    logger.info("=" * 60)
    logger.info(f"ANSWER_SERVICE_URL: {settings.answer_service_url or '(not set)'}")
    logger.info(f"OPENAI_API_KEY present: {bool(settings.openai_api_key)} ({mask_key(settings.openai_api_key)})")
    logger.info(
        f"Poll budget: {settings.max_polls} x {settings.poll_pause_seconds}s, "
        f"answer timeout: {settings.answer_timeout_seconds}s"
    )

    # FAIL FAST if no answer backend can be built
    await service.start()
    logger.info("=" * 60)

    yield

    # Shutdown
    await service.stop()
    logger.info("Shutting down Ushauri Voice Backend")


# ============================================================
# Helpers
# ============================================================

def _resolve_call_id(call_id: Optional[str], call_sid: Optional[str]) -> str:
    """Query callId wins, then Twilio's CallSid form field."""
    return (call_id or call_sid or "").strip()


def _fallback_twiml(service: VoiceCallService, call_id: Optional[str]) -> Response:
    """Spoken recovery: apology + capture for a known call, apology + hangup otherwise."""
    try:
        if service.is_known(call_id):
            transition = service.handle(call_id, InternalFailure())
        else:
            transition = reduce(CallSnapshot(known=False), InternalFailure(), service.flow)
        return twiml_response(render_steps(call_id, transition.steps, service.settings))
    except Exception:
        logger.exception(f"Fallback TwiML failed for call {call_id}")
        return twiml_response(LAST_RESORT_TWIML)


def _is_call_path(request: Request) -> bool:
    if request.url.path in CALL_PATHS:
        return True
    return "Twilio" in request.headers.get("user-agent", "")


# ============================================================
# Health / Debug
# ============================================================

@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": VERSION}


@router.get("/debug/state", response_model=DebugStateResponse)
async def debug_state(service: VoiceCallService = Depends(get_voice_service)) -> DebugStateResponse:
    """Read-only snapshot of in-memory call state. Never includes message content."""
    return service.debug_state()


# ============================================================
# Twilio Webhooks
# ============================================================

@router.post(START_CALL_PATH)
async def start_call(
    CallSid: Optional[str] = Form(None),
    service: VoiceCallService = Depends(get_voice_service),
):
    """
    Twilio voice webhook - called when the call connects.

    Creates the conversation, speaks the greeting and starts capturing speech.
    """
    call_id = _resolve_call_id(None, CallSid)
    if not call_id:
        call_id = str(uuid.uuid4())
        logger.warning(f"[START] No CallSid in request, using generated id {call_id}")

    logger.info(f"[START] New call received: {call_id}")

    try:
        transition = service.handle(call_id, CallStarted())
        logger.info(f"[START] Active conversations: {len(service.conversations)}, pending turns: {len(service.pending)}")
        return twiml_response(render_steps(call_id, transition.steps, service.settings))
    except Exception:
        logger.exception(f"[START] Error starting call {call_id}")
        return _fallback_twiml(service, call_id)


@router.post(SPEECH_CAPTURED_PATH)
async def speech_captured(
    callId: Optional[str] = Query(None),
    CallSid: Optional[str] = Form(None),
    SpeechResult: str = Form(""),
    service: VoiceCallService = Depends(get_voice_service),
):
    """
    Twilio gather webhook - live speech recognition result.

    Non-empty speech starts the turn's answer call in the background and
    returns filler TwiML redirecting to /poll-turn. Empty speech re-prompts.
    """
    call_id = _resolve_call_id(callId, CallSid)
    logger.info(f"[SPEECH] call {call_id}: '{SpeechResult[:50] if SpeechResult else ''}'")

    try:
        transition = service.handle(call_id, SpeechCaptured(transcript=SpeechResult))
        return twiml_response(render_steps(call_id, transition.steps, service.settings))
    except Exception:
        logger.exception(f"[SPEECH] Error processing speech for call {call_id}")
        return _fallback_twiml(service, call_id)


@router.post(RECORDING_COMPLETE_PATH)
async def recording_complete(
    callId: Optional[str] = Query(None),
    CallSid: Optional[str] = Form(None),
    RecordingUrl: Optional[str] = Form(None),
    service: VoiceCallService = Depends(get_voice_service),
):
    """
    Twilio record action - the caller finished speaking.

    The transcript arrives later on /transcription-callback, so the pending
    turn opens now and the caller is sent straight into the poll loop.
    """
    call_id = _resolve_call_id(callId, CallSid)
    logger.info(f"[RECORD] Recording finished for call {call_id} (url present: {bool(RecordingUrl)})")

    try:
        transition = service.handle(call_id, RecordingFinished())
        return twiml_response(render_steps(call_id, transition.steps, service.settings))
    except Exception:
        logger.exception(f"[RECORD] Error opening turn for call {call_id}")
        return _fallback_twiml(service, call_id)


@router.post("/transcription-callback", response_model=WebhookAck)
async def transcription_callback(
    CallSid: str = Form(""),
    TranscriptionStatus: str = Form(""),
    TranscriptionText: str = Form(""),
    service: VoiceCallService = Depends(get_voice_service),
) -> WebhookAck:
    """
    Twilio transcribeCallback - asynchronous transcript for a recording.

    Attaches the transcript to the waiting turn and launches its answer call.
    Twilio ignores the body, so this always acknowledges.
    """
    call_id = CallSid.strip()
    completed = TranscriptionStatus.lower() == "completed"
    logger.info(f"[TRANSCRIPT] call {call_id}: status={TranscriptionStatus}, text='{TranscriptionText[:50]}'")

    try:
        service.handle(call_id, TranscriptArrived(text=TranscriptionText, completed=completed))
    except Exception:
        logger.exception(f"[TRANSCRIPT] Error handling transcript for call {call_id}")

    return WebhookAck()


@router.post(POLL_TURN_PATH)
async def poll_turn(
    callId: Optional[str] = Query(None),
    poll: int = Query(1),
    maxPolls: Optional[int] = Query(None),
    CallSid: Optional[str] = Form(None),
    service: VoiceCallService = Depends(get_voice_service),
):
    """
    Twilio poll endpoint - checks whether the pending turn has resolved.

    Polling logic:
    - Ready: speak the answer in chunks, a follow-up prompt, capture again
    - Failed: apologize and capture again
    - poll >= maxPolls: apologize, drop the stale turn, capture again
    - Otherwise: pause (reassure every few polls) and redirect with poll+1
    """
    call_id = _resolve_call_id(callId, CallSid)
    max_polls = maxPolls if maxPolls is not None else service.settings.max_polls
    logger.debug(f"[POLL] call {call_id}: attempt {poll}/{max_polls}")

    try:
        transition = service.handle(call_id, PollTick(poll=poll, max_polls=max_polls))
        return twiml_response(render_steps(call_id, transition.steps, service.settings))
    except Exception:
        logger.exception(f"[POLL] Error polling call {call_id}")
        return _fallback_twiml(service, call_id)


@router.post("/call-status", response_model=WebhookAck)
async def call_status(
    CallSid: str = Form(""),
    CallStatus: str = Form(""),
    service: VoiceCallService = Depends(get_voice_service),
) -> WebhookAck:
    """
    Twilio status callback webhook.

    Terminal statuses release the call's conversation and pending turn.
    """
    call_id = CallSid.strip()
    logger.info(f"Twilio status webhook: CallSid={call_id}, status={CallStatus}")

    if CallStatus.lower() in TERMINAL_CALL_STATUSES:
        try:
            service.handle(call_id, CallEnded())
        except Exception:
            logger.exception(f"Error releasing state for call {call_id}")

    return WebhookAck()


# ============================================================
# Error handlers
# ============================================================

async def _validation_error_handler(request: Request, exc: RequestValidationError):
    if not _is_call_path(request):
        return await request_validation_exception_handler(request, exc)
    logger.warning(f"Invalid webhook request on {request.url.path}: {exc.errors()}")
    return _fallback_twiml(request.app.state.voice_service, request.query_params.get("callId"))


async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    if not _is_call_path(request):
        return await http_exception_handler(request, exc)
    logger.warning(f"HTTP {exc.status_code} on call path {request.url.path}")
    settings = request.app.state.voice_service.settings
    return twiml_response(render_steps(None, (Say(MISSING_ENDPOINT_MESSAGE), Hangup()), settings))


async def _unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}", exc_info=exc)
    if not _is_call_path(request):
        return PlainTextResponse("Internal Server Error", status_code=500)
    return _fallback_twiml(request.app.state.voice_service, request.query_params.get("callId"))


# ============================================================
# App factory
# ============================================================

def create_app(service: Optional[VoiceCallService] = None) -> FastAPI:
    """Build the FastAPI app around one VoiceCallService."""
    if service is None:
        service = VoiceCallService(load_settings())

    app = FastAPI(
        title="Ushauri Voice Backend",
        description="Voice call front end for the Ushauri AI answer service",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.voice_service = service

    # CORS middleware for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
