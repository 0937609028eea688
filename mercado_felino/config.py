import logging
import sys
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("mercado_felino")

GEMINI_OPENAI_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


class Settings(BaseSettings):
    """Runtime configuration from the environment and an optional ``.env`` file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    database_url: str = "sqlite:///./mercado_felino.db"
    jwt_secret: Optional[str] = None
    ai_api_key: Optional[str] = None
    ai_base_url: str = GEMINI_OPENAI_URL
    ai_model: str = "gemini-2.0-flash"
    chat_context_turns: int = Field(20, ge=0)
    chat_history_view_turns: int = Field(50, ge=0)
    frontend_url: Optional[str] = None
    port: int = 5000
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def setup_logging():
    """Configures the package logger."""
    level = getattr(logging, get_settings().log_level.upper(), logging.INFO)
    log.setLevel(level)
    if not log.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"
        ))
        log.addHandler(handler)
