"""REST API for conversation history management."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from language_mate.api.deps import get_store
from language_mate.schemas.settings import ConversationSettings, ConversationSettingsUpdate
from language_mate.services.store import ConversationStore

router = APIRouter()
logger = logging.getLogger(__name__)


class TitleUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=200)


@router.get("/")
async def list_conversations(store: ConversationStore = Depends(get_store)):
    conversations = await store.list_conversations()
    return [
        {
            "id": c.id,
            "title": c.title,
            "language": c.language,
            "created_at": c.created_at.isoformat(),
            "updated_at": c.updated_at.isoformat(),
        }
        for c in conversations
    ]


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, store: ConversationStore = Depends(get_store)):
    conv = await store.get_conversation(conversation_id)
    if not conv:
        logger.debug(f"Conversation {conversation_id} not found")
        raise HTTPException(status_code=404, detail="Conversation not found")

    messages = await store.get_messages(conversation_id)
    return {
        **conv.model_dump(mode="json"),
        "messages": [m.model_dump(mode="json") for m in messages],
    }


@router.patch("/{conversation_id}")
async def rename_conversation(
    conversation_id: str, body: TitleUpdate, store: ConversationStore = Depends(get_store)
):
    conv = await store.update_conversation(conversation_id, body.title.strip())
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conv.model_dump(mode="json")


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: str, store: ConversationStore = Depends(get_store)):
    if not await store.delete_conversation(conversation_id):
        logger.debug(f"Delete: conversation {conversation_id} not found")
        raise HTTPException(status_code=404, detail="Conversation not found")
    logger.debug(f"Deleted conversation {conversation_id}")
    return {"status": "deleted"}


@router.get("/{conversation_id}/settings")
async def get_conversation_settings(conversation_id: str, store: ConversationStore = Depends(get_store)):
    conv = await store.get_conversation(conversation_id)
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")

    stored = await store.get_conversation_settings(conversation_id)
    if stored is None:
        return ConversationSettings(target_language=conv.language).persisted()
    return ConversationSettings.model_validate(stored).persisted()


@router.put("/{conversation_id}/settings")
async def update_conversation_settings(
    conversation_id: str,
    body: ConversationSettingsUpdate,
    store: ConversationStore = Depends(get_store),
):
    conv = await store.get_conversation(conversation_id)
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")

    stored = await store.get_conversation_settings(conversation_id)
    current = ConversationSettings.model_validate(stored) if stored else ConversationSettings(target_language=conv.language)
    updated = body.apply(current)
    await store.update_conversation_settings(conversation_id, updated.persisted())
    return updated.persisted()
