"""Automatic chat titles, generated once the first full round of a chat exists."""

import logging
from collections.abc import Sequence

import httpx

from language_mate.core.errors import LanguageMateError
from language_mate.schemas.messages import Message
from language_mate.schemas.settings import ConversationSettings
from language_mate.services.llm.base import BaseLLMProvider, CompletionRequest, CompletionStream
from language_mate.services.llm.streaming import StreamDecoder
from language_mate.services.prompts.builder import render_template
from language_mate.services.prompts.templates import TITLE_SYSTEM_PROMPT, TITLE_USER_TEMPLATE
from language_mate.services.store import ConversationStore

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 30
FALLBACK_TITLE = "Chat"
CONTEXT_MESSAGES = 4


def placeholder_title(language: str) -> str:
    """Title given to a chat when it is created, before a real one is generated."""
    return f"{language} Chat"


def should_generate_title(messages: Sequence[Message]) -> bool:
    types = [m.type for m in messages]
    return (
        types.count("user") >= 1
        and types.count("chat-mate") >= 1
        and types.count("editor-mate") >= 2
    )


def clean_title(raw: str) -> str:
    title = raw.strip().strip("\"'").strip()
    if not title:
        return FALLBACK_TITLE
    if len(title) > TITLE_MAX_LENGTH:
        title = title[:TITLE_MAX_LENGTH] + "..."
    return title


async def generate_chat_title(
    llm: BaseLLMProvider,
    messages: Sequence[Message],
    target_language: str,
    model: str,
    api_key: str = "",
) -> str:
    """Ask the model for a 2-4 word title. Returns FALLBACK_TITLE on any failure."""
    context = " ".join(m.content for m in messages[:CONTEXT_MESSAGES])
    prompt = render_template(
        TITLE_USER_TEMPLATE,
        {"target_language": target_language, "context_messages": context},
    )
    request = CompletionRequest(
        model=model,
        message=prompt,
        system_prompt=TITLE_SYSTEM_PROMPT,
        streaming=False,
        api_key=api_key,
    )

    try:
        result = await llm.send(request)
        if isinstance(result, CompletionStream):
            async with result:
                content = (await StreamDecoder().decode(result)).content
        else:
            content = result.content
    except (LanguageMateError, httpx.HTTPError) as e:
        logger.warning(f"Title generation failed: {e}")
        return FALLBACK_TITLE

    return clean_title(content)


class TitleGenerator:
    """Conversation-update hook that titles each chat once.

    Only chats still carrying their placeholder title are renamed, so a title
    the user typed is never overwritten. A chat whose title call fell back keeps
    its placeholder and is tried again after its next turn.
    """

    def __init__(self, llm: BaseLLMProvider, store: ConversationStore):
        self._llm = llm
        self._store = store

    async def __call__(
        self,
        conversation_id: str,
        messages: Sequence[Message],
        settings: ConversationSettings,
    ) -> str | None:
        if not should_generate_title(messages):
            return None

        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None or conversation.title != placeholder_title(conversation.language):
            return None

        title = await generate_chat_title(
            self._llm,
            messages,
            target_language=settings.target_language,
            model=settings.model,
            api_key=settings.api_key,
        )
        if title == FALLBACK_TITLE:
            return None

        await self._store.update_conversation(conversation_id, title)
        logger.info(f"Titled conversation {conversation_id}: {title!r}")
        return title
