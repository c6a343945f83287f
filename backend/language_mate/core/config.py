from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Live Language Mate"
    debug: bool = False

    # Paths
    data_dir: Path = Path(__file__).resolve().parent.parent.parent / "data"
    db_path: Path = Path(__file__).resolve().parent.parent.parent / "language_mate.db"

    # Upstream completion API (OpenAI-compatible)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    http_referer: str = "http://localhost:8000"
    app_title: str = "Live Language Mate"
    capability_cache_ttl: float = 300.0  # seconds

    # Defaults for a freshly started chat
    default_model: str = "anthropic/claude-3-5-sonnet"
    default_target_language: str = "Swedish"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["*"]

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_prefix": "LANGUAGE_MATE_",
    }

    @property
    def images_dir(self) -> Path:
        return self.data_dir / "images"


settings = Settings()
