"""Prompt building for the Chat Mate and Editor Mate roles."""

from language_mate.services.prompts.builder import (
    BuiltPrompt,
    PromptVariables,
    build_prompt,
    extract_variables,
    get_available_templates,
    render_template,
)

__all__ = [
    "BuiltPrompt",
    "PromptVariables",
    "build_prompt",
    "extract_variables",
    "get_available_templates",
    "render_template",
]
