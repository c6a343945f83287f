"""Typed events emitted by the turn orchestrator, and the queue that carries them.

The presentation layer (the chat WebSocket) subscribes with ``consume()`` and
maps events onto its own render state.
"""

import asyncio
from collections.abc import AsyncIterator
from typing import Literal

from pydantic import BaseModel

from language_mate.schemas.messages import ConversationInfo, Message, MessageMetadata


class MessagesSnapshot(BaseModel):
    type: Literal["messages"] = "messages"
    conversation_id: str | None
    messages: list[Message]


class MessageUpdated(BaseModel):
    """One streamed delta applied to an in-flight message."""

    type: Literal["message_updated"] = "message_updated"
    message_id: str
    channel: Literal["content", "reasoning"]
    delta: str


class TurnStateChanged(BaseModel):
    type: Literal["state"] = "state"
    state: str


class Notification(BaseModel):
    type: Literal["notification"] = "notification"
    level: Literal["info", "warning", "error"]
    title: str
    description: str


class ConversationCreated(BaseModel):
    type: Literal["conversation_created"] = "conversation_created"
    conversation: ConversationInfo


class ConversationUpdated(BaseModel):
    type: Literal["conversation_updated"] = "conversation_updated"
    conversation_id: str
    title: str | None = None


class SettingsChanged(BaseModel):
    type: Literal["settings"] = "settings"
    settings: dict


class EditorAnswer(BaseModel):
    """Editor Mate's reply to a side question. Not part of the chat history.

    Streamed deltas for it arrive as ``message_updated`` events addressed to ``ask_id``.
    """

    type: Literal["editor_answer"] = "editor_answer"
    ask_id: str
    question: str
    selected_text: str | None = None
    content: str
    reasoning: str | None = None
    metadata: MessageMetadata


class TurnSettled(BaseModel):
    type: Literal["turn_settled"] = "turn_settled"
    outcome: Literal["completed", "cancelled", "failed"]
    conversation_id: str | None


OrchestratorEvent = (
    MessagesSnapshot
    | MessageUpdated
    | TurnStateChanged
    | Notification
    | ConversationCreated
    | ConversationUpdated
    | SettingsChanged
    | EditorAnswer
    | TurnSettled
)


class EventBus:
    """Unbounded queue between the orchestrator and a single consumer."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[OrchestratorEvent | None] = asyncio.Queue()
        self._closed = False

    def emit(self, event: OrchestratorEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    async def consume(self) -> AsyncIterator[OrchestratorEvent]:
        """Yield events as they arrive. Stops after close()."""
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
