"""Shared test fixtures for backend tests."""

import asyncio
from collections.abc import AsyncIterator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from language_mate.services.events import EventBus
from language_mate.services.llm.base import (
    BaseLLMProvider,
    CompletionRequest,
    CompletionResult,
    CompletionStream,
)
from language_mate.services.prompts.templates import TITLE_SYSTEM_PROMPT
from language_mate.services.store import SQLModelConversationStore

# In-memory SQLite with StaticPool so all connections (including threads) share one DB
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# A phrase unique to each role template, used to tell calls apart
PROMPT_MARKERS = {
    "editor-mate-user-comment": "You review what the learner just wrote",
    "editor-mate-chatmate-comment": "You help the learner understand the reply",
    "chat-mate-response": "You are a native speaker of",
    "editor-mate-response": "answer the learner's questions directly",
    "title": TITLE_SYSTEM_PROMPT,
}


def prompt_kind(request: CompletionRequest) -> str:
    for kind, marker in PROMPT_MARKERS.items():
        if marker in request.system_prompt:
            return kind
    return "custom"


def sse(*payloads: str) -> list[bytes]:
    """Encode raw payload strings as SSE blocks."""
    return [f"data: {p}\n\n".encode() for p in payloads]


async def iterate(chunks: list[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        await asyncio.sleep(0)
        yield chunk


def drain(bus: EventBus) -> list:
    """Take every event queued on ``bus`` so far without waiting."""
    drained = []
    while not bus._queue.empty():
        event = bus._queue.get_nowait()
        if event is not None:
            drained.append(event)
    return drained


class FakeLLM(BaseLLMProvider):
    """Scripted provider keyed by the kind of prompt it receives.

    ``replies`` give plain results, ``streams`` give SSE chunks, ``failures``
    raise, and ``gates`` hold a call until the event is set.
    """

    def __init__(self):
        self.requests: list[tuple[str, CompletionRequest]] = []
        self.replies: dict[str, str] = {
            "editor-mate-user-comment": "Bra skrivet! Grammatiken stämmer.",
            "chat-mate-response": "Jag mår bra, tack! Och du?",
            "editor-mate-chatmate-comment": "'Jag mår bra' means 'I am fine'.",
            "title": "Swedish Small Talk",
        }
        self.reasoning: dict[str, str] = {}
        self.streams: dict[str, list[bytes]] = {}
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.started: dict[str, asyncio.Event] = {}
        self.closed_streams = 0

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.requests]

    def requests_for(self, kind: str) -> list[CompletionRequest]:
        return [r for k, r in self.requests if k == kind]

    def started_event(self, kind: str) -> asyncio.Event:
        return self.started.setdefault(kind, asyncio.Event())

    async def _close(self) -> None:
        self.closed_streams += 1

    async def send(self, request: CompletionRequest) -> CompletionResult | CompletionStream:
        kind = prompt_kind(request)
        self.requests.append((kind, request))
        self.started_event(kind).set()
        await asyncio.sleep(0)
        if kind in self.gates:
            await self.gates[kind].wait()
        if kind in self.failures:
            raise self.failures[kind]
        if kind in self.streams:
            return CompletionStream(iterate(self.streams[kind]).__aiter__(), self._close)
        return CompletionResult(content=self.replies.get(kind, f"{kind} reply"), reasoning=self.reasoning.get(kind))


@pytest.fixture(autouse=True)
def setup_test_db():
    """Create all tables before each test, drop after."""
    import language_mate.models.conversation  # noqa: F401 - register models
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def store():
    return SQLModelConversationStore(test_engine)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def client(fake_llm, tmp_path):
    """FastAPI TestClient with all external deps patched."""
    with (
        patch("language_mate.main.engine", test_engine),
        patch("language_mate.main.create_llm_provider", return_value=fake_llm),
        patch("language_mate.main.settings.data_dir", tmp_path),
    ):
        from language_mate.main import app

        with TestClient(app) as c:
            yield c
