from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "StoryLoom"
    # Default to a local postgres database if not set in env
    database_url: str = "postgresql+asyncpg://localhost/storyloom"

    # Logging
    log_file: str = "server.log"
    log_level: str = "INFO"

    # Model configuration - can be overridden via environment variables
    model_librarian: str = "gemini-2.5-flash"   # Background prose analysis
    model_summarizer: str = "gemini-2.5-flash"  # Chapter marker summaries

    # Librarian debounce window (seconds) after the last prose write
    librarian_debounce_seconds: float = 2.0

    # Upper bound on a single agent invocation; None means unbounded
    agent_timeout_seconds: Optional[float] = None

    # Custom script blocks
    block_script_timeout_seconds: float = 1.0
    block_script_max_steps: int = 20000

    # Context assembly defaults (per-story settings override these)
    default_prose_limit: int = 10
    default_shortlist_limit: int = 20

    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"]
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
