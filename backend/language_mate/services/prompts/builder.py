"""Turns a message type plus a bag of variables into a final system prompt."""

import re
from dataclasses import dataclass

from language_mate.core.errors import ConfigurationError
from language_mate.schemas.settings import ConversationSettings, FeedbackStyle
from language_mate.services.prompts.templates import (
    CULTURAL_CONTEXT_INSTRUCTIONS,
    FEEDBACK_STYLE_DESCRIPTIONS,
    FEEDBACK_STYLE_TONES,
    PROGRESSIVE_COMPLEXITY_INSTRUCTIONS,
    TEMPLATES,
    PromptTemplate,
)

_PLACEHOLDER = re.compile(r"\{([^{}]*)\}")
_BLANK_LINES = re.compile(r"\n\s*\n")


@dataclass(frozen=True)
class PromptVariables:
    target_language: str
    chat_mate_personality: str | None = None
    chat_mate_background: str | None = None
    editor_mate_personality: str | None = None
    editor_mate_expertise: str | None = None
    feedback_style: FeedbackStyle = "encouraging"
    cultural_context: bool = False
    progressive_complexity: bool = False
    feedback_language: str | None = None
    language_level: str | None = None

    @classmethod
    def from_settings(cls, settings: ConversationSettings) -> "PromptVariables":
        return cls(
            target_language=settings.target_language,
            chat_mate_personality=settings.chat_mate_personality,
            chat_mate_background=settings.chat_mate_background,
            editor_mate_personality=settings.editor_mate_personality,
            editor_mate_expertise=settings.editor_mate_expertise,
            feedback_style=settings.feedback_style,
            cultural_context=settings.cultural_context,
            progressive_complexity=settings.progressive_complexity,
            feedback_language=settings.feedback_language,
            language_level=settings.language_level,
        )


@dataclass(frozen=True)
class BuiltPrompt:
    system_prompt: str
    template_id: str
    variables: dict[str, str]


def extract_variables(template: str) -> list[str]:
    """Placeholder names in order of appearance."""
    return _PLACEHOLDER.findall(template)


def resolve_variables(variables: PromptVariables) -> dict[str, str]:
    """Expand the structured variable bag into the flat strings templates refer to."""
    progressive = ""
    if variables.progressive_complexity:
        progressive = PROGRESSIVE_COMPLEXITY_INSTRUCTIONS
        if variables.language_level:
            progressive += f"\n\nCurrent complexity level: {variables.language_level}"

    return {
        "target_language": variables.target_language,
        "chat_mate_personality": variables.chat_mate_personality or "You are a friendly local.",
        "chat_mate_background": variables.chat_mate_background or "",
        "editor_mate_personality": variables.editor_mate_personality or "You are a patient language teacher.",
        "editor_mate_expertise": variables.editor_mate_expertise or "",
        "feedback_style_description": FEEDBACK_STYLE_DESCRIPTIONS.get(
            variables.feedback_style, "helpful and constructive"
        ),
        "feedback_style_tone": FEEDBACK_STYLE_TONES.get(
            variables.feedback_style, "supportive and clear"
        ),
        "cultural_context_instructions": (
            CULTURAL_CONTEXT_INSTRUCTIONS if variables.cultural_context else ""
        ),
        "progressive_complexity_instructions": progressive,
        "feedback_language_instructions": (
            f"Provide all feedback and explanations in {variables.feedback_language}."
            if variables.feedback_language
            else ""
        ),
        "language_level_instructions": (
            f"The learner's level is {variables.language_level}; pitch your explanations to it."
            if variables.language_level
            else ""
        ),
    }


def render_template(template: str, values: dict[str, str]) -> str:
    """Substitute placeholders, drop the ones without a value and tidy whitespace.

    Substitution is a single pass, so braces inside substituted values are never
    re-expanded. Any brace left afterwards is removed: the result never contains
    ``{`` or ``}``.
    """
    result = _PLACEHOLDER.sub(lambda m: values.get(m.group(1), ""), template)
    result = result.replace("{", "").replace("}", "")
    return _BLANK_LINES.sub("\n\n", result).strip()


def build_prompt(
    message_type: str,
    variables: PromptVariables,
    custom_template: str | None = None,
) -> BuiltPrompt:
    if not variables.target_language or not variables.target_language.strip():
        raise ConfigurationError("A target language is required to build a prompt")

    if custom_template is not None:
        template = PromptTemplate("custom", "Custom template", custom_template)
    else:
        template = TEMPLATES.get(message_type)
        if template is None:
            raise ConfigurationError(f"No prompt template for message type '{message_type}'")

    values = resolve_variables(variables)
    return BuiltPrompt(
        system_prompt=render_template(template.text, values),
        template_id=template.id,
        variables=values,
    )


def get_available_templates() -> dict[str, PromptTemplate]:
    return dict(TEMPLATES)
