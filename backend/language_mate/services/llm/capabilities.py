"""Model listing and capability lookup, cached for a few minutes.

A failed lookup never blocks a request: callers get the stale cache, the
fallback model list, or ``None`` for "unknown".
"""

import logging
import time

import httpx

from language_mate.core.config import settings
from language_mate.core.errors import UpstreamError
from language_mate.schemas.api import ModelArchitecture, ModelInfo, ModelsResponse

logger = logging.getLogger(__name__)

_TEXT_ONLY = ModelArchitecture(input_modalities=["text"], output_modalities=["text"])
_VISION = ModelArchitecture(input_modalities=["text", "image"], output_modalities=["text"])

FALLBACK_MODELS = [
    ModelInfo(id="anthropic/claude-3-5-sonnet", name="Claude 3.5 Sonnet", architecture=_VISION),
    ModelInfo(id="anthropic/claude-3-5-haiku", name="Claude 3.5 Haiku", architecture=_TEXT_ONLY),
    ModelInfo(id="openai/gpt-4o", name="GPT-4o", architecture=_VISION),
    ModelInfo(id="openai/gpt-4o-mini", name="GPT-4o Mini", architecture=_VISION),
    ModelInfo(id="meta-llama/llama-3.1-8b-instruct", name="Llama 3.1 8B", architecture=_TEXT_ONLY),
]


def normalize_model_id(model: str) -> str:
    """Strip the ``:thinking`` variant suffix; reasoning is requested with a separate flag."""
    suffix = ":thinking"
    return model[: -len(suffix)] if model.endswith(suffix) else model


class ModelCapabilities:
    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str | None = None,
        ttl: float | None = None,
    ):
        self._http = http
        self._base_url = (base_url or settings.openrouter_base_url).rstrip("/")
        self._ttl = settings.capability_cache_ttl if ttl is None else ttl
        self._cache: tuple[list[ModelInfo], float] | None = None

    async def fetch_models(self) -> list[ModelInfo]:
        """All upstream models. Serves a stale cache when the refresh fails."""
        if self._cache:
            models, ts = self._cache
            if time.time() - ts < self._ttl:
                return models

        try:
            resp = await self._http.get(f"{self._base_url}/models")
            resp.raise_for_status()
            models = ModelsResponse.model_validate(resp.json()).data
        except (httpx.HTTPError, ValueError) as e:
            if self._cache:
                logger.warning(f"Model list refresh failed, using stale cache: {e}")
                return self._cache[0]
            status = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else 0
            raise UpstreamError(status, str(e), "Could not fetch the model list") from e

        self._cache = (models, time.time())
        logger.debug(f"Cached {len(models)} models")
        return models

    async def supports_images(self, model: str) -> bool | None:
        """True/False when the model is listed, None when it cannot be determined."""
        try:
            models = await self.fetch_models()
        except UpstreamError as e:
            logger.warning(f"Capability check for {model} inconclusive: {e}")
            return None

        model_id = normalize_model_id(model)
        for info in models:
            if info.id == model_id:
                return info.supports_images
        return None

    async def list_chat_models(self) -> list[ModelInfo]:
        """Text-in/text-out models sorted by name, or a small fallback list."""
        try:
            models = await self.fetch_models()
        except UpstreamError as e:
            logger.warning(f"Using fallback model list: {e}")
            return list(FALLBACK_MODELS)

        chat_models = [m for m in models if m.is_text_model and "/" in m.id]
        return sorted(chat_models, key=lambda m: m.name)
