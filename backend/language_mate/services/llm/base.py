"""Abstract completion provider interface. All providers must implement this."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from language_mate.schemas.messages import Attachment


@dataclass
class ChatMessage:
    role: str  # "user" | "assistant" | "system"
    content: str


@dataclass
class CompletionRequest:
    model: str
    message: str
    system_prompt: str
    history: list[ChatMessage] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    streaming: bool = True
    enable_reasoning: bool = False
    api_key: str = ""
    current_datetime: str | None = None
    user_timezone: str | None = None


@dataclass
class CompletionResult:
    content: str
    reasoning: str | None = None


class CompletionStream:
    """A live upstream SSE byte stream, to be fed to a StreamDecoder.

    The underlying connection stays open until ``aclose()`` is called; use it
    as an async context manager.
    """

    def __init__(self, chunks: AsyncIterator[bytes], close: Callable[[], Awaitable[None]]):
        self._chunks = chunks
        self._close = close
        self._closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._close()

    async def __aenter__(self) -> "CompletionStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class BaseLLMProvider(ABC):
    @abstractmethod
    async def send(self, request: CompletionRequest) -> CompletionResult | CompletionStream:
        """Send one chat completion. Returns a parsed result or a live stream,
        depending on what the upstream answered with."""
        ...
