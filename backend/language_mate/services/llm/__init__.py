"""Completion provider factory."""

import httpx

from language_mate.services.image_storage import ImageStorage
from language_mate.services.llm.base import BaseLLMProvider
from language_mate.services.llm.capabilities import ModelCapabilities
from language_mate.services.llm.openrouter import OpenRouterClient


def create_llm_provider(
    http: httpx.AsyncClient,
    capabilities: ModelCapabilities,
    image_storage: ImageStorage | None = None,
) -> BaseLLMProvider:
    """Factory function that returns the configured completion provider."""
    return OpenRouterClient(http, capabilities=capabilities, image_storage=image_storage)
