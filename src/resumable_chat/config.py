"""Runtime configuration read from the environment."""

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field

DEFAULT_CHAT_MODELS = ["chat-model", "chat-model-reasoning"]


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    """Application settings."""

    gemini_api_key: Optional[str] = None
    chat_model_name: str = "gemini-1.5-flash"
    reasoning_model_name: str = "gemini-1.5-pro"

    # Entitlements shared by every authenticated user
    available_chat_models: List[str] = Field(default_factory=lambda: list(DEFAULT_CHAT_MODELS))
    max_messages_per_day: int = 100_000

    max_steps: int = 5
    turn_timeout_seconds: float = 60.0
    backfill_window_seconds: int = 15
    active_tools: List[str] = Field(
        default_factory=lambda: [
            "getWeather",
            "createDocument",
            "updateDocument",
            "requestSuggestions",
        ]
    )

    stream_transport: str = "memory"  # "memory", "redis" or "none"
    redis_url: Optional[str] = None
    stream_ttl_seconds: int = 86_400
    stream_active_ttl_seconds: int = 10

    session_header: str = "x-user-id"

    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        redis_url = os.getenv("REDIS_URL") or None
        transport = os.getenv("STREAM_TRANSPORT")
        if transport is None:
            transport = "redis" if redis_url else "memory"

        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            chat_model_name=os.getenv("CHAT_MODEL_NAME", "gemini-1.5-flash"),
            reasoning_model_name=os.getenv("REASONING_MODEL_NAME", "gemini-1.5-pro"),
            available_chat_models=_env_list("AVAILABLE_CHAT_MODELS", DEFAULT_CHAT_MODELS),
            max_messages_per_day=int(os.getenv("MAX_MESSAGES_PER_DAY", "100000")),
            max_steps=int(os.getenv("MAX_STEPS", "5")),
            turn_timeout_seconds=float(os.getenv("TURN_TIMEOUT_SECONDS", "60")),
            backfill_window_seconds=int(os.getenv("BACKFILL_WINDOW_SECONDS", "15")),
            stream_transport=transport.strip().lower(),
            redis_url=redis_url,
            stream_ttl_seconds=int(os.getenv("STREAM_TTL_SECONDS", "86400")),
            stream_active_ttl_seconds=int(os.getenv("STREAM_ACTIVE_TTL_SECONDS", "10")),
            session_header=os.getenv("SESSION_HEADER", "x-user-id").lower(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON"),
        )


@lru_cache()
def get_settings() -> Settings:
    """Returns the process-wide settings"""
    return Settings.from_env()
