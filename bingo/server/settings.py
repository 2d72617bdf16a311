"""Bingo server configuration via environment variables."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from bingo.playback.spotify import DEFAULT_ACCOUNTS_URL, DEFAULT_API_URL
from shared.validators import StringListEnvSettingsSource, parse_string_list

if TYPE_CHECKING:
    from pydantic_settings.sources.base import PydanticBaseSettingsSource


class BingoServerSettings(BaseSettings):
    model_config = {"env_prefix": "BINGO_"}

    cors_origins: list[str] = ["http://localhost:3000"]
    max_rooms: int = Field(default=200, ge=1)
    room_ttl_seconds: int = Field(default=6 * 3600, ge=60)  # 6 hours default, min 60s
    log_dir: str | None = None

    # Persisted outside the session engine; the engine never guesses a device.
    device_file: str = Field(default="data/device.json", min_length=1)
    token_file: str = Field(default="data/tokens.json", min_length=1)

    spotify_client_id: str | None = None
    spotify_client_secret: str | None = None
    spotify_api_url: str = DEFAULT_API_URL
    spotify_accounts_url: str = DEFAULT_ACCOUNTS_URL

    default_snippet_seconds: float = Field(default=30, ge=5, le=300)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: str | list[str]) -> list[str]:
        return parse_string_list(v)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        env = StringListEnvSettingsSource(settings_cls, string_list_fields=frozenset({"cors_origins"}))
        return init_settings, env, dotenv_settings, file_secret_settings
