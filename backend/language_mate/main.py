import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from language_mate.api import ai_chat, chat, conversations, images
from language_mate.api.deps import Services
from language_mate.core.config import settings
from language_mate.core.database import engine, init_db
from language_mate.services.image_storage import ImageStorage
from language_mate.services.llm import create_llm_provider
from language_mate.services.llm.capabilities import ModelCapabilities
from language_mate.services.store import SQLModelConversationStore
from language_mate.services.titles import TitleGenerator


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure logging based on debug setting
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s" if settings.debug
        else "%(levelname)-8s %(name)s: %(message)s",
    )

    init_db(engine)
    settings.data_dir.mkdir(parents=True, exist_ok=True)

    # Upstream calls have no timeout; a running turn ends when it finishes or is cancelled
    http = httpx.AsyncClient(timeout=None)
    capabilities = ModelCapabilities(http)
    image_storage = ImageStorage(settings.images_dir)
    llm = create_llm_provider(http, capabilities, image_storage)
    store = SQLModelConversationStore(engine)
    app.state.services = Services(
        llm=llm,
        store=store,
        capabilities=capabilities,
        image_storage=image_storage,
        titles=TitleGenerator(llm, store),
    )

    yield

    await http.aclose()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router, prefix="/api/chat", tags=["chat"])
app.include_router(conversations.router, prefix="/api/conversations", tags=["conversations"])
app.include_router(ai_chat.router, prefix="/api", tags=["ai-chat"])
app.include_router(images.router, prefix="/api/images", tags=["images"])


@app.get("/api/health")
async def health():
    return {"status": "ok", "app": settings.app_name}
