"""
Runtime configuration.

Every value comes from an environment variable with a sensible default so
the service runs locally with zero setup (in-memory storage, verification
disabled until OPENAI_API_KEY is set).
"""

from __future__ import annotations

import os
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Runtime configuration for the evidence service."""

    # Env-derived defaults go through the same validation as explicit values.
    model_config = ConfigDict(validate_default=True)

    # ── Vision inference ──────────────────────────────────────────────
    vision_api_key: str = Field(default_factory=lambda: _env("OPENAI_API_KEY", ""), repr=False)
    vision_api_url: str = Field(
        default_factory=lambda: _env("VISION_API_URL", "https://api.openai.com/v1/chat/completions"),
    )
    vision_model: str = Field(default_factory=lambda: _env("VISION_MODEL", "gpt-4o"))
    vision_max_tokens: int = Field(default_factory=lambda: int(_env("VISION_MAX_TOKENS", "500")), ge=1)
    vision_temperature: float = Field(
        default_factory=lambda: float(_env("VISION_TEMPERATURE", "0.1")), ge=0.0, le=2.0,
    )
    vision_image_detail: Literal["low", "high", "auto"] = Field(
        default_factory=lambda: _env("VISION_IMAGE_DETAIL", "low"),
    )
    request_timeout_s: float = Field(default_factory=lambda: float(_env("VISION_TIMEOUT_S", "30")), gt=0)

    # ── Retry / rate limiting ─────────────────────────────────────────
    max_retries: int = Field(
        default_factory=lambda: int(_env("VISION_MAX_RETRIES", "3")), ge=1,
        description="Total dispatch attempts per verification, first try included.",
    )
    retry_base_delay_s: float = Field(default_factory=lambda: float(_env("VISION_RETRY_DELAY_S", "1.0")), ge=0)
    requests_per_minute: int = Field(default_factory=lambda: int(_env("VISION_RPM", "20")), ge=1)
    requests_per_hour: int = Field(default_factory=lambda: int(_env("VISION_RPH", "100")), ge=1)

    # ── Object storage ────────────────────────────────────────────────
    storage_backend: Literal["memory", "firebase"] = Field(
        default_factory=lambda: _env("STORAGE_BACKEND", "memory"),
    )
    storage_bucket: str = Field(default_factory=lambda: _env("STORAGE_BUCKET", "evidence-local"))
    storage_base_url: str = Field(
        default_factory=lambda: _env("STORAGE_BASE_URL", "https://firebasestorage.googleapis.com"),
    )
    storage_token: str = Field(default_factory=lambda: _env("STORAGE_TOKEN", ""), repr=False)
    temp_cleanup_delay_s: float = Field(
        default_factory=lambda: float(_env("TEMP_CLEANUP_DELAY_S", "600")), ge=0,
    )

    # ── Images and uploads ────────────────────────────────────────────
    image_compression_quality: float = Field(
        default_factory=lambda: float(_env("IMAGE_QUALITY", "0.8")), gt=0.0, le=1.0,
    )
    max_image_bytes: int = Field(
        default_factory=lambda: int(_env("MAX_IMAGE_BYTES", str(1024 * 1024))), ge=1024,
    )
    max_images: int = Field(default_factory=lambda: int(_env("MAX_IMAGES", "5")), ge=1)
    allow_unverified_fallback: bool = Field(default_factory=lambda: _env_bool("ALLOW_UNVERIFIED", True))
    spool_dir: Path = Field(
        default_factory=lambda: Path(_env("SPOOL_DIR", os.path.join(tempfile.gettempdir(), "evidence-spool"))),
        description="Where uploaded photos are kept so retry() can replay them.",
    )

    log_level: str = Field(default_factory=lambda: _env("LOG_LEVEL", "INFO").upper())


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()
