"""Service container built by the app lifespan, and the FastAPI dependencies that read it."""

from dataclasses import dataclass

from fastapi import Request

from language_mate.services.image_storage import ImageStorage
from language_mate.services.llm.base import BaseLLMProvider
from language_mate.services.llm.capabilities import ModelCapabilities
from language_mate.services.store import ConversationStore
from language_mate.services.titles import TitleGenerator


@dataclass
class Services:
    llm: BaseLLMProvider
    store: ConversationStore
    capabilities: ModelCapabilities
    image_storage: ImageStorage
    titles: TitleGenerator


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_store(request: Request) -> ConversationStore:
    return request.app.state.services.store
