"""SQLite engine for the conversation store."""

from pathlib import Path

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from language_mate.core.config import settings


def build_engine(db_path: Path, echo: bool = False) -> Engine:
    # The orchestrator persists from the event loop thread while FastAPI may
    # hand the same engine to worker threads.
    return create_engine(
        f"sqlite:///{db_path}",
        echo=echo,
        connect_args={"check_same_thread": False},
    )


engine = build_engine(settings.db_path, echo=settings.debug)


def init_db(bind: Engine | None = None) -> None:
    import language_mate.models.conversation  # noqa: F401 - ensure models are registered
    SQLModel.metadata.create_all(bind or engine)
