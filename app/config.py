"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="SeriesTrack", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    omdb_api_key: str | None = Field(default=None, alias="OMDB_API_KEY")
    omdb_api_url: HttpUrl = Field(
        default="https://www.omdbapi.com", alias="OMDB_API_URL"
    )
    catalog_timeout_seconds: float = Field(
        default=15.0, alias="CATALOG_TIMEOUT_SECONDS", gt=0, le=120
    )

    migration_delay_seconds: float = Field(
        default=0.5, alias="MIGRATION_DELAY_SECONDS", ge=0, le=10
    )
    episode_fetch_delay_seconds: float = Field(
        default=0.3, alias="EPISODE_FETCH_DELAY_SECONDS", ge=0, le=10
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./seriestrack.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("omdb_api_key", mode="before")
    @classmethod
    def _strip_blank_key(cls, value: object) -> object:
        """Treat blank API keys as missing."""

        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
