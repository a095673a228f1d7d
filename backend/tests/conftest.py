"""
Shared fixtures: a controllable fake answer backend.
"""

import asyncio
from typing import Any, List, Optional, Sequence

import pytest

from app.answer_client import Answer, AnswerClient, AnswerResult


class FakeAnswerClient(AnswerClient):
    """Answer backend that blocks until released, then returns a fixed result."""

    name = "fake"

    def __init__(self, result: Optional[AnswerResult] = None, error: Optional[Exception] = None):
        self.result = result or Answer("A will is a legal document that says who receives your property.")
        self.error = error
        self.release = asyncio.Event()
        self.calls: List[List[Any]] = []
        self.closed = False

    async def fetch_answer(self, turns: Sequence[Any]) -> AnswerResult:
        self.calls.append(list(turns))
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.result

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def fake_answers():
    """Fake answer backend, created inside the running event loop."""
    return FakeAnswerClient()
