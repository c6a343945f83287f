"""Wire shapes for the upstream chat-completions API and the relay endpoints.

Upstream bodies are validated here so the rest of the code only ever sees
closed, typed objects. Anything failing validation is turned into an
UpstreamError by the caller.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from language_mate.schemas.messages import Attachment
from language_mate.schemas.settings import ConversationSettings

PromptMessageType = Literal[
    "chat-mate-response",
    "editor-mate-response",
    "editor-mate-user-comment",
    "editor-mate-chatmate-comment",
]


# --- Request payload sent upstream ---


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrl(BaseModel):
    url: str


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


ContentPart = TextPart | ImagePart


class WireMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str | list[ContentPart]


class ReasoningBudget(BaseModel):
    max_tokens: int


class ChatCompletionPayload(BaseModel):
    model: str
    messages: list[WireMessage]
    stream: bool
    temperature: float
    max_tokens: int
    reasoning: ReasoningBudget | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# --- Upstream responses ---


class _Upstream(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StreamDelta(_Upstream):
    content: str | None = None
    reasoning: str | None = None


class StreamChoice(_Upstream):
    delta: StreamDelta = Field(default_factory=StreamDelta)


class StreamChunk(_Upstream):
    choices: list[StreamChoice]


class ResponseMessage(_Upstream):
    content: str | None = None
    reasoning: str | None = None


class ResponseChoice(_Upstream):
    message: ResponseMessage


class ChatCompletionResponse(_Upstream):
    choices: list[ResponseChoice] = Field(min_length=1)
    usage: dict[str, Any] | None = None


class ModelArchitecture(_Upstream):
    input_modalities: list[str] = Field(default_factory=list)
    output_modalities: list[str] = Field(default_factory=list)


class ModelInfo(_Upstream):
    id: str
    name: str
    description: str = ""
    context_length: int | None = None
    architecture: ModelArchitecture | None = None

    @property
    def supports_images(self) -> bool:
        return self.architecture is not None and "image" in self.architecture.input_modalities

    @property
    def is_text_model(self) -> bool:
        if self.architecture is None:
            return False
        return (
            "text" in self.architecture.input_modalities
            and "text" in self.architecture.output_modalities
        )


class ModelsResponse(_Upstream):
    data: list[ModelInfo]


# --- Relay formats ---


class StreamEvent(BaseModel):
    """One normalized streaming event: a content delta, a reasoning delta or the end marker."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["content", "reasoning", "done"]
    content: str | None = None


class RelayResponse(BaseModel):
    response: str
    reasoning: str | None = None


class HistoryMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class AiChatRequest(BaseModel):
    """Body of ``POST /api/ai-chat``: one prompt forwarded to the completion API."""

    model_config = ConfigDict(extra="forbid")

    message: str = Field(min_length=1)
    message_type: PromptMessageType
    conversation_history: list[HistoryMessage] = Field(default_factory=list)
    system_prompt: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    current_datetime: str | None = None
    user_timezone: str | None = None
    settings: ConversationSettings = Field(default_factory=ConversationSettings)
