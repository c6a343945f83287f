"""Conversation history as the completion API sees it.

Every prior message is sent with the ``user`` role and prefixed with its
author tag, so the model never mistakes an earlier Chat Mate or Editor Mate
reply for its own turn.
"""

from collections.abc import Iterable

from language_mate.schemas.messages import Message
from language_mate.services.llm.base import ChatMessage


def tag_content(message: Message) -> str:
    return f"[{message.type}]: {message.content}"


def flatten_history(messages: Iterable[Message]) -> list[ChatMessage]:
    """Full history, used for Editor Mate calls."""
    return [ChatMessage(role="user", content=tag_content(m)) for m in messages]


def chat_mate_history(messages: Iterable[Message]) -> list[ChatMessage]:
    """History for Chat Mate calls: Editor Mate commentary is never included."""
    return flatten_history(m for m in messages if m.type in ("user", "chat-mate"))
