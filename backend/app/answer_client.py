"""
Answer Client - one outbound call to the remote AI answer service per turn.

RESILIENCE DESIGN:
- fetch_answer() NEVER raises: every outcome is an Answer or an AnswerFailure
- Hard deadline on the whole call (asyncio.wait_for), not just per socket op
- Only the last few messages are sent, to bound payload size and latency
- Accepted response shapes: {"answer"}, {"choices": [{"message": {"content"}}]},
  {"text"} and a bare JSON string. Anything else is malformed-response.

Two backends share this contract:
- HttpAnswerClient: POSTs to ANSWER_SERVICE_URL with httpx
- OpenAIAnswerClient: chat completion via AsyncOpenAI (no service URL set)

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
from openai import APIError, APITimeoutError, AsyncOpenAI

from engine.turn_machine import FailureReason

from .config import VoiceSettings, mask_key

logger = logging.getLogger(__name__)

# Maximum chars to log from an upstream body on error
MAX_ERROR_LOG_CHARS = 500

ANSWER_SYSTEM_PROMPT = """You are Ushauri, a calm legal information assistant answering over the phone.
Answer in plain spoken English without lists, markdown or URLs.
Keep answers short: a few sentences.
If a question needs a lawyer, say so briefly."""


@dataclass(frozen=True)
class Answer:
    text: str


@dataclass(frozen=True)
class AnswerFailure:
    reason: FailureReason
    detail: str = ""


AnswerResult = Union[Answer, AnswerFailure]


def _as_message(turn: Any) -> Dict[str, str]:
    if isinstance(turn, dict):
        return {"role": str(turn.get("role", "")), "content": str(turn.get("content", ""))}
    return {"role": turn.role, "content": turn.content}


def recent_window(turns: Sequence[Any], size: int) -> List[Dict[str, str]]:
    """Last `size` messages as plain dicts, oldest first."""
    messages = [_as_message(turn) for turn in turns]
    if size <= 0:
        return []
    return messages[-size:]


def build_payload(turns: Sequence[Any], context_messages: int = 4) -> Dict[str, Any]:
    """Request body: latest user utterance plus the recent conversation window."""
    window = recent_window(turns, context_messages)
    latest = ""
    for message in reversed(window):
        if message["role"] == "user":
            latest = message["content"]
            break
    return {"text": latest, "conversations": window}


def extract_answer(data: Any) -> Optional[str]:
    """Pull the answer text out of a response body, or None if the shape is unknown."""
    candidate: Any = None

    if isinstance(data, str):
        candidate = data
    elif isinstance(data, dict):
        if isinstance(data.get("answer"), str):
            candidate = data["answer"]
        elif isinstance(data.get("choices"), list):
            choices = data["choices"]
            if choices and isinstance(choices[0], dict):
                message = choices[0].get("message")
                if isinstance(message, dict):
                    candidate = message.get("content")
        elif isinstance(data.get("text"), str):
            candidate = data["text"]

    if not isinstance(candidate, str):
        return None
    candidate = candidate.strip()
    return candidate or None


class AnswerClient(ABC):
    """Base for answer backends."""

    name = "base"

    @abstractmethod
    async def fetch_answer(self, turns: Sequence[Any]) -> AnswerResult:
        """Return an Answer or an AnswerFailure. Must not raise."""

    async def close(self) -> None:
        return None


class HttpAnswerClient(AnswerClient):
    """POSTs the conversation window to the remote answer service."""

    name = "http"

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 7.0,
        context_messages: int = 4,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not endpoint:
            raise RuntimeError("ANSWER_SERVICE_URL is required for the HTTP answer client")
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.context_messages = context_messages
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        logger.info(f"HTTP answer client configured: {endpoint} (timeout {timeout_seconds}s)")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.http_client.aclose()
        logger.info("HTTP answer client closed")

    async def fetch_answer(self, turns: Sequence[Any]) -> AnswerResult:
        payload = build_payload(turns, self.context_messages)
        logger.debug(f"Requesting answer for: {payload['text'][:100]}")

        try:
            response = await asyncio.wait_for(
                self.http_client.post(self.endpoint, json=payload),
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning(f"Answer service timed out after {self.timeout_seconds}s")
            return AnswerFailure(FailureReason.TIMEOUT, f"no answer within {self.timeout_seconds}s")
        except httpx.HTTPStatusError as e:
            body = e.response.text[:MAX_ERROR_LOG_CHARS]
            logger.error(f"Answer service returned {e.response.status_code}: {body}")
            return AnswerFailure(FailureReason.TRANSPORT_ERROR, f"status {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.error(f"Answer service transport error: {e!r}")
            return AnswerFailure(FailureReason.TRANSPORT_ERROR, str(e))
        except Exception as e:
            logger.error(f"Answer service call failed unexpectedly: {e!r}")
            return AnswerFailure(FailureReason.TRANSPORT_ERROR, str(e))

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Answer service returned non-JSON body: {response.text[:MAX_ERROR_LOG_CHARS]}")
            return AnswerFailure(FailureReason.MALFORMED_RESPONSE, "body is not JSON")

        answer = extract_answer(data)
        if answer is None:
            logger.error(f"Unexpected answer response format: {str(data)[:MAX_ERROR_LOG_CHARS]}")
            return AnswerFailure(FailureReason.MALFORMED_RESPONSE, "no answer in response")

        logger.info(f"Answer received: {answer[:100]}...")
        return Answer(answer)


class OpenAIAnswerClient(AnswerClient):
    """Answers with an OpenAI chat completion over the conversation window."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 7.0,
        context_messages: int = 4,
        client: Optional[AsyncOpenAI] = None,
    ):
        if not api_key and client is None:
            raise RuntimeError("OPENAI_API_KEY is required for the OpenAI answer client")
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.context_messages = context_messages
        logger.info(f"OpenAI answer client configured with model: {model}")

    async def close(self) -> None:
        await self.client.close()

    async def fetch_answer(self, turns: Sequence[Any]) -> AnswerResult:
        messages = [{"role": "system", "content": ANSWER_SYSTEM_PROMPT}]
        messages.extend(recent_window(turns, self.context_messages))

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=0.3,
                    max_tokens=400,
                ),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, APITimeoutError):
            logger.warning(f"OpenAI answer timed out after {self.timeout_seconds}s")
            return AnswerFailure(FailureReason.TIMEOUT, f"no answer within {self.timeout_seconds}s")
        except APIError as e:
            logger.error(f"OpenAI answer request failed: {e}")
            return AnswerFailure(FailureReason.TRANSPORT_ERROR, str(e))
        except Exception as e:
            logger.error(f"OpenAI answer request failed unexpectedly: {e!r}")
            return AnswerFailure(FailureReason.TRANSPORT_ERROR, str(e))

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            content = None

        if not isinstance(content, str) or not content.strip():
            logger.error("OpenAI answer response had no content")
            return AnswerFailure(FailureReason.MALFORMED_RESPONSE, "empty completion")

        answer = content.strip()
        logger.info(f"OpenAI answer received: {answer[:100]}...")
        return Answer(answer)


def build_answer_client(settings: VoiceSettings) -> AnswerClient:
    """Pick the answer backend from settings.

    Raises:
        RuntimeError: If neither ANSWER_SERVICE_URL nor OPENAI_API_KEY is set
    """
    if settings.answer_service_url:
        return HttpAnswerClient(
            endpoint=settings.answer_service_url,
            timeout_seconds=settings.answer_timeout_seconds,
            context_messages=settings.answer_context_messages,
        )

    if settings.openai_api_key:
        logger.info(f"ANSWER_SERVICE_URL not set - using OpenAI ({mask_key(settings.openai_api_key)})")
        return OpenAIAnswerClient(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout_seconds=settings.answer_timeout_seconds,
            context_messages=settings.answer_context_messages,
        )

    raise RuntimeError(
        "No answer backend configured. "
        "Set ANSWER_SERVICE_URL (or OPENAI_API_KEY) in backend/.env or as an environment variable."
    )
