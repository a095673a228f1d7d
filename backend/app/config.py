"""
Settings for the voice backend, read from environment variables.

Call load_environment() once at process start, then load_settings().
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CAPTURE_MODES = ("speech", "record")

# Seconds of slack between the answer deadline and the poll budget
POLL_OVERHEAD_SECONDS = 2


def load_environment() -> None:
    """Load .env from backend/.env, else the current working directory."""
    env_paths = [
        Path(__file__).parent.parent / ".env",  # backend/.env
        Path.cwd() / ".env",
    ]
    for env_path in env_paths:
        if env_path.exists():
            load_dotenv(env_path)
            return
    load_dotenv()


@dataclass
class VoiceSettings:
    """Runtime settings. Defaults match a single-process deployment."""
    answer_service_url: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    answer_timeout_seconds: float = 7.0
    answer_context_messages: int = 4

    capture_mode: str = "speech"
    max_polls: int = 40
    poll_pause_seconds: int = 1
    reassure_every: int = 5
    chunk_max_chars: int = 400

    sweep_interval_seconds: int = 30 * 60
    conversation_ttl_seconds: int = 60 * 60
    pending_ttl_seconds: int = 5 * 60

    voice: str = "alice"
    language: str = "en-US"
    webhook_base_url: str = ""
    debug: bool = False

    @property
    def conversation_ttl(self) -> timedelta:
        return timedelta(seconds=self.conversation_ttl_seconds)

    @property
    def pending_ttl(self) -> timedelta:
        return timedelta(seconds=self.pending_ttl_seconds)

    @property
    def poll_budget_seconds(self) -> int:
        return self.max_polls * self.poll_pause_seconds

    def validate(self) -> None:
        """Raise RuntimeError on settings the service cannot run with."""
        if self.capture_mode not in CAPTURE_MODES:
            raise RuntimeError(
                f"CAPTURE_MODE must be one of {', '.join(CAPTURE_MODES)}, got '{self.capture_mode}'"
            )
        if self.max_polls < 1 or self.poll_pause_seconds < 1:
            raise RuntimeError("MAX_POLLS and POLL_PAUSE_SECONDS must be at least 1")
        if self.chunk_max_chars < 1:
            raise RuntimeError("CHUNK_MAX_CHARS must be at least 1")
        if self.answer_timeout_seconds <= 0:
            raise RuntimeError("ANSWER_TIMEOUT_SECONDS must be positive")

        if self.poll_budget_seconds < self.answer_timeout_seconds + POLL_OVERHEAD_SECONDS:
            logger.warning(
                f"Poll budget ({self.poll_budget_seconds}s) is shorter than the answer timeout "
                f"({self.answer_timeout_seconds}s) plus overhead - callers may hear apologies for "
                f"answers that would have arrived"
            )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got '{raw}'")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got '{raw}'")


def load_settings() -> VoiceSettings:
    """Build VoiceSettings from the environment and validate them."""
    settings = VoiceSettings(
        answer_service_url=os.getenv("ANSWER_SERVICE_URL") or os.getenv("RENDER_ENDPOINT"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        answer_timeout_seconds=_env_float("ANSWER_TIMEOUT_SECONDS", 7.0),
        answer_context_messages=_env_int("ANSWER_CONTEXT_MESSAGES", 4),
        capture_mode=os.getenv("CAPTURE_MODE", "speech").strip().lower(),
        max_polls=_env_int("MAX_POLLS", 40),
        poll_pause_seconds=_env_int("POLL_PAUSE_SECONDS", 1),
        reassure_every=_env_int("REASSURE_EVERY", 5),
        chunk_max_chars=_env_int("CHUNK_MAX_CHARS", 400),
        sweep_interval_seconds=_env_int("SWEEP_INTERVAL_SECONDS", 30 * 60),
        conversation_ttl_seconds=_env_int("CONVERSATION_TTL_SECONDS", 60 * 60),
        pending_ttl_seconds=_env_int("PENDING_TTL_SECONDS", 5 * 60),
        voice=os.getenv("TWILIO_VOICE", "alice"),
        language=os.getenv("TWILIO_LANGUAGE", "en-US"),
        webhook_base_url=os.getenv("WEBHOOK_BASE_URL", "").rstrip("/"),
        debug=os.getenv("DEBUG", "false").lower() == "true",
    )
    settings.validate()
    return settings


def mask_key(key: Optional[str]) -> str:
    """Mask API key showing only last 4 chars."""
    if not key:
        return "(not set)"
    if len(key) <= 4:
        return "****"
    return f"****{key[-4:]}"
