"""Server-sent-event decoding for streamed completions.

Two payload shapes are understood on ``data: `` lines:

* the relay's normalized events, ``{"type": "content"|"reasoning"|"done", "content": ...}``
* raw OpenAI-compatible chunks, ``{"choices": [{"delta": {"content", "reasoning"}}]}``,
  terminated by the literal ``data: [DONE]``.
"""

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass, field

import httpx
from pydantic import ValidationError

from language_mate.core.errors import StreamDecodeError, UpstreamError
from language_mate.schemas.api import StreamChunk, StreamEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"
BLOCK_SEPARATOR = "\n\n"


@dataclass
class StreamResult:
    content: str = ""
    reasoning: str = ""
    # False when the stream closed without an explicit done event; still a normal completion.
    saw_done: bool = False
    errors: list[StreamDecodeError] = field(default_factory=list)


UpdateCallback = Callable[[StreamEvent], None]
CompleteCallback = Callable[[StreamResult], None]


def encode_event(event: StreamEvent) -> bytes:
    return f"{DATA_PREFIX}{event.model_dump_json(exclude_none=True)}{BLOCK_SEPARATOR}".encode("utf-8")


class StreamDecoder:
    """Incremental SSE decoder. One instance per response; not restartable.

    ``on_update`` is called synchronously for every content or reasoning delta,
    in arrival order. ``on_complete`` is called exactly once, on the done event
    or when the byte stream ends. A connection that drops after some bytes
    arrived counts as the stream ending; one that drops before any byte raises
    UpstreamError.
    """

    def __init__(
        self,
        on_update: UpdateCallback | None = None,
        on_complete: CompleteCallback | None = None,
    ):
        self._on_update = on_update
        self._on_complete = on_complete
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._started = False
        self._received = False
        self._completed = False
        self.result = StreamResult()

    async def events(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
        if self._started:
            raise RuntimeError("StreamDecoder instances cannot be reused")
        self._started = True

        try:
            async for chunk in chunks:
                self._received = True
                self._buffer = (self._buffer + self._utf8.decode(chunk)).replace("\r\n", "\n")
                # The last block may be incomplete; keep it until more bytes arrive.
                while BLOCK_SEPARATOR in self._buffer:
                    block, self._buffer = self._buffer.split(BLOCK_SEPARATOR, 1)
                    for event in self._parse_block(block):
                        self._apply(event)
                        yield event
                        if event.type == "done":
                            return
        except httpx.TransportError as e:
            if not self._received:
                raise UpstreamError(0, str(e), f"The AI service closed the connection: {e}") from e
            # A connection dropped mid-body ends the stream like EOF
            logger.warning(f"Stream broke off, keeping the output received so far: {e}")

        tail = (self._buffer + self._utf8.decode(b"", final=True)).replace("\r\n", "\n")
        self._buffer = ""
        for event in self._parse_block(tail):
            self._apply(event)
            yield event
            if event.type == "done":
                return
        self._complete()

    async def decode(self, chunks: AsyncIterable[bytes]) -> StreamResult:
        async for _ in self.events(chunks):
            pass
        return self.result

    def _apply(self, event: StreamEvent) -> None:
        if event.type == "done":
            self.result.saw_done = True
            self._complete()
            return
        if event.content is None:
            return
        if event.type == "content":
            self.result.content += event.content
        else:
            self.result.reasoning += event.content
        if self._on_update is not None:
            self._on_update(event)

    def _complete(self) -> None:
        if self._completed:
            return
        self._completed = True
        if self._on_complete is not None:
            self._on_complete(self.result)

    def _parse_block(self, block: str) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in block.split("\n"):
            if not line.startswith(DATA_PREFIX):
                # Comments (": keep-alive"), event names and blank lines carry no payload
                continue
            payload = line[len(DATA_PREFIX):].strip()
            if payload == DONE_MARKER:
                events.append(StreamEvent(type="done"))
                break
            parsed = self._parse_payload(payload)
            events.extend(parsed)
            if any(e.type == "done" for e in parsed):
                break
        return events

    def _parse_payload(self, payload: str) -> list[StreamEvent]:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            self._record(payload, f"invalid JSON ({e.msg})")
            return []

        if not isinstance(data, dict):
            self._record(payload, "payload is not a JSON object")
            return []

        try:
            if "type" in data:
                return [StreamEvent.model_validate(data)]
            chunk = StreamChunk.model_validate(data)
        except ValidationError as e:
            self._record(payload, f"unexpected event shape ({e.error_count()} errors)")
            return []

        events = []
        if chunk.choices:
            delta = chunk.choices[0].delta
            if delta.reasoning:
                events.append(StreamEvent(type="reasoning", content=delta.reasoning))
            if delta.content:
                events.append(StreamEvent(type="content", content=delta.content))
        return events

    def _record(self, payload: str, reason: str) -> None:
        error = StreamDecodeError(payload, reason)
        self.result.errors.append(error)
        logger.warning(f"Skipping malformed stream line: {error}")
