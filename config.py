"""
config.py - Runtime configuration.

Settings come from environment variables, with a local `.env` loaded first.
Nothing here talks to the network; clients are built lazily by the modules
that need them.
"""

from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from logging_config import get_logger

logger = get_logger(__name__)

try:
    load_dotenv()
except UnicodeDecodeError:
    # Fallback for legacy Windows-encoded .env files.
    load_dotenv(encoding="cp1252")

TRUE_VALUES = {"1", "true", "yes", "on"}
STORE_BACKENDS = {"google", "memory"}


class Settings(BaseModel):
    """Validated runtime settings."""

    model_config = ConfigDict(extra="ignore")

    openai_api_key: Optional[str] = None
    vision_model: str = "gpt-4o"
    text_model: str = "gpt-4o-mini"
    chat_model: str = "gpt-4o-2024-08-06"
    openai_timeout_seconds: float = Field(default=60.0, gt=0)

    gcp_sa_credentials: Optional[str] = None
    sheets_timeout_seconds: float = Field(default=30.0, gt=0)
    store_backend: str = "google"

    context_row_limit: int = Field(default=100, ge=1)
    history_turn_limit: int = Field(default=10, ge=0)

    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    log_json: bool = False
    port: int = 8000

    @field_validator("openai_api_key", "gcp_sa_credentials", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        text = str(value or "").strip()
        return text or None

    @field_validator("store_backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value: Any) -> str:
        text = str(value or "google").strip().lower()
        if text not in STORE_BACKENDS:
            raise ValueError(f"STORE_BACKEND must be one of {sorted(STORE_BACKENDS)}, got {text!r}")
        return text

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if isinstance(value, (list, tuple)):
            origins = [str(item).strip() for item in value]
        else:
            origins = [part.strip() for part in str(value or "").split(",")]
        return [origin for origin in origins if origin] or ["*"]

    @field_validator("log_json", mode="before")
    @classmethod
    def _parse_bool(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        return str(value or "").strip().lower() in TRUE_VALUES


ENV_KEYS: dict[str, str] = {
    "openai_api_key": "OPENAI_API_KEY",
    "vision_model": "OPENAI_VISION_MODEL",
    "text_model": "OPENAI_TEXT_MODEL",
    "chat_model": "OPENAI_CHAT_MODEL",
    "openai_timeout_seconds": "OPENAI_TIMEOUT_SECONDS",
    "gcp_sa_credentials": "GCP_SA_CREDENTIALS",
    "sheets_timeout_seconds": "SHEETS_TIMEOUT_SECONDS",
    "store_backend": "STORE_BACKEND",
    "context_row_limit": "CONTEXT_ROW_LIMIT",
    "history_turn_limit": "HISTORY_TURN_LIMIT",
    "cors_origins": "CORS_ORIGINS",
    "log_level": "LOG_LEVEL",
    "log_json": "LOG_JSON",
    "port": "PORT",
}


def load_settings(overrides: Optional[dict[str, Any]] = None) -> Settings:
    """Build settings from the environment, then apply explicit overrides."""
    raw: dict[str, Any] = {}
    for field_name, env_key in ENV_KEYS.items():
        value = os.getenv(env_key)
        if value is not None and value.strip() != "":
            raw[field_name] = value
    if overrides:
        raw.update(overrides)

    settings = Settings.model_validate(raw)
    logger.debug(
        "settings_loaded | store_backend=%s | openai_key=%s | sa_credentials=%s",
        settings.store_backend,
        "set" if settings.openai_api_key else "missing",
        "set" if settings.gcp_sa_credentials else "missing",
    )
    return settings
