"""Per-conversation settings and the defaults applied to a new chat."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from language_mate.core.config import settings as app_settings

FeedbackStyle = Literal["encouraging", "gentle", "direct", "detailed"]

DEFAULT_CHAT_MATE_PERSONALITY = (
    "You are a friendly local who loves to chat about daily life, culture, and local experiences."
)
DEFAULT_EDITOR_MATE_PERSONALITY = (
    "You are a patient language teacher. Provide helpful corrections and suggestions "
    "to improve language skills."
)
DEFAULT_CHAT_MATE_BACKGROUND = "young professional, loves local culture"
DEFAULT_EDITOR_MATE_EXPERTISE = "10+ years teaching experience"


class ConversationSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_language: str = Field(default_factory=lambda: app_settings.default_target_language)
    model: str = Field(default_factory=lambda: app_settings.default_model)
    api_key: str = ""
    streaming: bool = True
    enable_reasoning: bool = False

    chat_mate_personality: str = DEFAULT_CHAT_MATE_PERSONALITY
    chat_mate_background: str = DEFAULT_CHAT_MATE_BACKGROUND
    editor_mate_personality: str = DEFAULT_EDITOR_MATE_PERSONALITY
    editor_mate_expertise: str = DEFAULT_EDITOR_MATE_EXPERTISE

    feedback_style: FeedbackStyle = "encouraging"
    feedback_language: str | None = None
    language_level: str | None = None
    cultural_context: bool = True
    progressive_complexity: bool = True

    def persisted(self) -> dict:
        """Settings as written to the store; the API key never leaves memory."""
        return self.model_dump(exclude={"api_key"})


class ConversationSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_language: str | None = None
    model: str | None = None
    api_key: str | None = None
    streaming: bool | None = None
    enable_reasoning: bool | None = None
    chat_mate_personality: str | None = None
    chat_mate_background: str | None = None
    editor_mate_personality: str | None = None
    editor_mate_expertise: str | None = None
    feedback_style: FeedbackStyle | None = None
    feedback_language: str | None = None
    language_level: str | None = None
    cultural_context: bool | None = None
    progressive_complexity: bool | None = None

    def apply(self, current: ConversationSettings) -> ConversationSettings:
        return current.model_copy(update=self.model_dump(exclude_unset=True))
