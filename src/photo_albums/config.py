"""Application configuration."""

import os
from enum import StrEnum

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class CredentialMode(StrEnum):
    """How session credentials travel with authenticated requests."""

    COOKIE = "cookie"
    BEARER = "bearer"


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    api_base_url: str = "http://localhost:8080/api"
    credential_mode: CredentialMode = CredentialMode.COOKIE
    dev_token: str | None = None
    cache_stale_seconds: float = 300
    request_timeout_seconds: float = 15
    expired_token_markers: str = "expired token"
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_prefix="PHOTO_ALBUMS_",
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )


def parse_markers(raw: str | None) -> tuple[str, ...]:
    """Parse comma-separated expired-token markers, lowercased."""
    if raw is None:
        return ()
    markers: list[str] = []
    for chunk in raw.split(","):
        value = chunk.strip().lower()
        if value and value not in markers:
            markers.append(value)
    return tuple(markers)
