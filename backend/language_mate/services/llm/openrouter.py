"""OpenRouter (OpenAI-compatible chat completions) provider."""

import json
import logging

import httpx
from pydantic import ValidationError

from language_mate.core.config import settings
from language_mate.core.errors import ConfigurationError, ModelCapabilityError, UpstreamError
from language_mate.core.sandbox import SandboxError
from language_mate.schemas.api import (
    ChatCompletionPayload,
    ChatCompletionResponse,
    ContentPart,
    ImagePart,
    ImageUrl,
    ReasoningBudget,
    TextPart,
    WireMessage,
)
from language_mate.schemas.messages import Attachment, ImageAttachment, UrlAttachment
from language_mate.services.image_storage import ImageStorage
from language_mate.services.llm.base import (
    BaseLLMProvider,
    CompletionRequest,
    CompletionResult,
    CompletionStream,
)
from language_mate.services.llm.capabilities import ModelCapabilities, normalize_model_id
from language_mate.services.prompts.templates import JAILBREAK_PREVENTION_PROMPT

logger = logging.getLogger(__name__)

# Fixed token budgets; not tunable.
BASE_MAX_TOKENS = 2048
REASONING_MAX_TOKENS = 4096
REASONING_BUDGET_TOKENS = 2000
TEMPERATURE = 0.7


def resolve_api_key(user_key: str | None, fallback: str | None) -> str:
    """A non-blank user-supplied key always wins over the configured one."""
    if user_key and user_key.strip():
        return user_key.strip()
    if fallback and fallback.strip():
        return fallback.strip()
    raise ConfigurationError(
        "No API key available. Add your OpenRouter key in settings "
        "or set LANGUAGE_MATE_OPENROUTER_API_KEY."
    )


def build_messages(
    request: CompletionRequest, image_parts: list[ImagePart] | None = None
) -> list[WireMessage]:
    """History first, then the system prompts, then the new user message."""
    messages = [WireMessage(role=m.role, content=m.content) for m in request.history]

    if request.system_prompt:
        messages.append(WireMessage(role="system", content=request.system_prompt))
    messages.append(WireMessage(role="system", content=JAILBREAK_PREVENTION_PROMPT))

    if request.current_datetime:
        when = request.current_datetime
        if request.user_timezone:
            when = f"{when} ({request.user_timezone})"
        messages.append(WireMessage(role="system", content=f"Current date and time: {when}"))

    if image_parts:
        parts: list[ContentPart] = [TextPart(text=request.message), *image_parts]
        messages.append(WireMessage(role="user", content=parts))
    else:
        messages.append(WireMessage(role="user", content=request.message))
    return messages


def build_payload(
    request: CompletionRequest, image_parts: list[ImagePart] | None = None
) -> ChatCompletionPayload:
    return ChatCompletionPayload(
        model=normalize_model_id(request.model),
        messages=build_messages(request, image_parts),
        stream=request.streaming,
        temperature=TEMPERATURE,
        max_tokens=REASONING_MAX_TOKENS if request.enable_reasoning else BASE_MAX_TOKENS,
        reasoning=ReasoningBudget(max_tokens=REASONING_BUDGET_TOKENS) if request.enable_reasoning else None,
    )


def parse_completion(status: int, raw: bytes) -> CompletionResult:
    try:
        data = json.loads(raw)
        parsed = ChatCompletionResponse.model_validate(data)
    except (ValueError, ValidationError) as e:
        body = raw.decode("utf-8", errors="replace")
        logger.error(f"Unexpected completion body: {body[:500]}")
        raise UpstreamError(status, body, "The AI service returned an unexpected response") from e

    message = parsed.choices[0].message
    return CompletionResult(content=message.content or "", reasoning=message.reasoning or None)


class OpenRouterClient(BaseLLMProvider):
    """Sends chat completions to OpenRouter.

    No timeout and no retry: a request runs until it finishes or the calling
    task is cancelled.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        capabilities: ModelCapabilities | None = None,
        image_storage: ImageStorage | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self._http = http
        self._capabilities = capabilities
        self._image_storage = image_storage
        self._api_key = settings.openrouter_api_key if api_key is None else api_key
        self._base_url = (base_url or settings.openrouter_base_url).rstrip("/")

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": settings.http_referer,
            "X-Title": settings.app_title,
        }

    async def _check_image_support(self, model: str) -> None:
        if self._capabilities is None:
            return
        supported = await self._capabilities.supports_images(model)
        # Only a conclusive "no" blocks the request
        if supported is False:
            raise ModelCapabilityError(model)

    def _image_parts(self, attachments: list[Attachment]) -> list[ImagePart]:
        parts = []
        for attachment in attachments:
            if isinstance(attachment, UrlAttachment):
                parts.append(ImagePart(image_url=ImageUrl(url=attachment.url)))
            elif isinstance(attachment, ImageAttachment):
                if self._image_storage is None:
                    logger.warning(f"No image storage configured, dropping attachment {attachment.id}")
                    continue
                try:
                    url = self._image_storage.to_data_url(attachment.id)
                except (OSError, SandboxError, ValueError) as e:
                    logger.warning(f"Could not load attachment {attachment.id}, sending text only: {e}")
                    continue
                parts.append(ImagePart(image_url=ImageUrl(url=url)))
        return parts

    async def send(self, request: CompletionRequest) -> CompletionResult | CompletionStream:
        api_key = resolve_api_key(request.api_key, self._api_key)

        image_parts: list[ImagePart] = []
        if request.attachments:
            await self._check_image_support(request.model)
            image_parts = self._image_parts(request.attachments)

        payload = build_payload(request, image_parts)
        logger.info(
            f"Completion request: model={payload.model}, messages={len(payload.messages)}, "
            f"stream={payload.stream}, reasoning={request.enable_reasoning}, images={len(image_parts)}"
        )

        http_request = self._http.build_request(
            "POST",
            f"{self._base_url}/chat/completions",
            json=payload.to_wire(),
            headers=self._headers(api_key),
        )
        try:
            response = await self._http.send(http_request, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"Completion request failed: {e}")
            raise UpstreamError(0, str(e), f"Could not reach the AI service: {e}") from e

        if not response.is_success:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            logger.error(f"Upstream returned {response.status_code}: {body[:500]}")
            raise UpstreamError(response.status_code, body)

        if "text/event-stream" in response.headers.get("content-type", ""):
            return CompletionStream(response.aiter_bytes(), response.aclose)

        try:
            raw = await response.aread()
        finally:
            await response.aclose()
        return parse_completion(response.status_code, raw)
