"""Centralised configuration using pydantic-settings.

All environment variables are read through the Settings class.
Consumers call ``get_settings()`` to obtain a cached, validated instance.
Tests construct ``Settings(_env_file=None, ...)`` directly for isolation.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pagemark.highlights.models import HighlightColor

logger = logging.getLogger(__name__)

# src/pagemark/config.py  ->  parent x3  ->  project root
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


# ---------------------------------------------------------------------------
# Sub-models (one per configuration domain)
# ---------------------------------------------------------------------------
class ProjectionConfig(BaseModel):
    """How HTML is flattened into canonical text.

    The same policy must be used when projecting and when capturing a
    selection, otherwise stored offsets drift.
    """

    block_separator: str = ""
    line_break: str = "\n"
    skip_block_whitespace: bool = False


class HighlightConfig(BaseModel):
    """Validation policy for highlight records."""

    max_note_length: int = 5000
    default_color: HighlightColor = HighlightColor.YELLOW

    @field_validator("max_note_length")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            msg = "HIGHLIGHTS__MAX_NOTE_LENGTH must be >= 0"
            raise ValueError(msg)
        return value


class OverlayConfig(BaseModel):
    """Marker element emitted around highlighted runs."""

    marker_tag: str = "span"
    marker_class: str = "highlight"


class AppConfig(BaseModel):
    """Application runtime configuration."""

    log_dir: Path = Path("logs")


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------
class Settings(BaseSettings):
    """Settings with automatic .env loading and type validation.

    Environment variables use double-underscore delimiter for nesting:
    ``PROJECTION__BLOCK_SEPARATOR``, ``HIGHLIGHTS__MAX_NOTE_LENGTH``, etc.
    """

    model_config = SettingsConfigDict(
        env_file=_PROJECT_ROOT / ".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    projection: ProjectionConfig = ProjectionConfig()
    highlights: HighlightConfig = HighlightConfig()
    overlay: OverlayConfig = OverlayConfig()
    app: AppConfig = AppConfig()


# ---------------------------------------------------------------------------
# Singleton access
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Call ``get_settings.cache_clear()`` in tests to reset.
    """
    settings = Settings()

    env_file = settings.model_config.get("env_file")
    if env_file is not None and Path(str(env_file)).is_file():
        logger.info("Settings loaded .env from: %s", env_file)
    else:
        logger.debug("Settings: no .env file found, using env vars and defaults")

    return settings
