from functools import lru_cache
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator

_ENV_CANDIDATES = (
    Path(__file__).resolve().parent.parent.parent / ".env",
    Path(__file__).resolve().parent.parent / ".env",
    Path.cwd() / ".env",
)

for env_path in _ENV_CANDIDATES:
    if env_path.is_file():
        load_dotenv(env_path, override=False)
        break


class Settings(BaseSettings):
    """Bot configuration sourced from environment variables."""

    database_url: str = "postgresql+psycopg://postgres:postgres@db:5432/zenbot"
    telegram_bot_token: str | None = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    webhook_url: str | None = None
    webhook_secret: str | None = None

    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    ai_provider: str = "openai"
    ai_model: str = "gpt-4o-mini"
    ai_temperature: float = 0.3
    ai_max_tokens: int = 1000
    ai_timeout: float = 30.0

    transcription_model: str = "whisper-1"
    transcription_language: str = "ru"

    zenmoney_api_base_url: str = "https://api.zenmoney.ru"
    zenmoney_token: str | None = None
    zenmoney_timeout: float = 30.0
    zenmoney_validation_timeout: float = 10.0
    zenmoney_default_instrument: int = 10548

    proposal_cache_size: int = 1000
    proposal_cache_ttl_seconds: int = 60 * 60 * 48

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=None, populate_by_name=True)

    @field_validator("ai_provider", mode="before")
    @classmethod
    def normalise_provider(cls, value: object) -> str:
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
        raise ValueError("Invalid ai_provider value.")

    @model_validator(mode="after")
    def populate_from_env(self) -> "Settings":
        if not self.telegram_bot_token:
            self.telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN")
        if not self.openai_api_key:
            self.openai_api_key = os.getenv("OPENAI_API_KEY")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return cached settings to avoid repeated environment parsing."""
    return Settings()
