"""Relay for single prompts: forwards one request to the completion API.

Streaming answers are re-emitted as normalized SSE events
(``data: {"type": "content"|"reasoning"|"done", ...}``), always ending with a
done event; plain answers come back as ``{"response", "reasoning"}``.
"""

import logging
from collections.abc import AsyncIterator

import httpx
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from language_mate.api.deps import Services, get_services
from language_mate.core.errors import ConfigurationError, ModelCapabilityError, UpstreamError
from language_mate.schemas.api import AiChatRequest, RelayResponse, StreamEvent
from language_mate.services.llm.base import ChatMessage, CompletionRequest, CompletionStream
from language_mate.services.llm.streaming import StreamDecoder, encode_event
from language_mate.services.prompts.builder import PromptVariables, build_prompt

router = APIRouter()
logger = logging.getLogger(__name__)


async def _relay(stream: CompletionStream) -> AsyncIterator[bytes]:
    async with stream:
        try:
            async for event in StreamDecoder().events(stream):
                if event.type != "done":
                    yield encode_event(event)
        except (httpx.HTTPError, UpstreamError) as e:
            logger.error(f"Upstream stream broke off: {e}")
    yield encode_event(StreamEvent(type="done"))


@router.post("/ai-chat")
async def ai_chat(body: AiChatRequest, services: Services = Depends(get_services)):
    settings = body.settings
    try:
        system_prompt = body.system_prompt or build_prompt(
            body.message_type, PromptVariables.from_settings(settings)
        ).system_prompt
        result = await services.llm.send(
            CompletionRequest(
                model=settings.model,
                message=body.message,
                system_prompt=system_prompt,
                history=[ChatMessage(role=m.role, content=m.content) for m in body.conversation_history],
                attachments=body.attachments,
                streaming=settings.streaming,
                enable_reasoning=settings.enable_reasoning,
                api_key=settings.api_key,
                current_datetime=body.current_datetime,
                user_timezone=body.user_timezone,
            )
        )
    except (ConfigurationError, ModelCapabilityError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UpstreamError as e:
        logger.error(f"Relay request failed: {e}")
        raise HTTPException(status_code=502, detail=e.user_message())

    if isinstance(result, CompletionStream):
        return StreamingResponse(_relay(result), media_type="text/event-stream")
    return RelayResponse(response=result.content, reasoning=result.reasoning)


@router.get("/models")
async def list_models(services: Services = Depends(get_services)):
    models = await services.capabilities.list_chat_models()
    return {
        "models": [
            {
                "id": m.id,
                "name": m.name,
                "description": m.description,
                "context_length": m.context_length,
                "supports_images": m.supports_images,
            }
            for m in models
        ]
    }
