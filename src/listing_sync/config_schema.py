"""Unified configuration schema for listing_sync.

Defines Pydantic models for the YAML config structure with dedicated
sections for the listings API connection, engine tuning, local storage
and logging, plus an adapter that flattens them into the fallback dict
consumed by ``config.load_config()``.

Usage:
    from listing_sync.config_schema import build_config, to_yaml_fallbacks

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = load_config(yaml_fallbacks=to_yaml_fallbacks(unified))
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class ApiConfig(BaseModel):
    """Listings API connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    url: str | None = Field(default=None, description="Listings API URL")
    username: str | None = Field(default=None, description="API username")
    password: str | None = Field(default=None, description="API password")
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )
    debug: bool = Field(default=False, description="Enable debug mode")
    request_timeout: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Remote call timeout in seconds (1-3600)",
    )
    image_base_url: str | None = Field(
        default=None,
        description="Base URL prepended to media files without their own path",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Engine tuning."""

    chunk_size: int = Field(
        default=25,
        ge=1,
        le=200,
        description="Listings requested and applied per invocation (1-200)",
    )
    stale_after_minutes: int = Field(
        default=30,
        ge=1,
        description="Minutes without progress before a running phase is reported busy",
    )
    entity_type: str = Field(
        default="partners",
        description="Local entity type the listings are stored as",
    )

    model_config = {"frozen": True}


class StorageConfig(BaseModel):
    """Local storage locations."""

    data_dir: str | None = Field(
        default=None,
        description="Directory holding run state, page cache and local store",
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()``
    (zero-config) is always valid.
    """

    api: ApiConfig = Field(default_factory=ApiConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully -- anything absent gets defaults.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> load_config() fallbacks
# ---------------------------------------------------------------------------


def to_yaml_fallbacks(unified: UnifiedConfig) -> dict:
    """Flatten a ``UnifiedConfig`` into the fallback dict that
    ``load_config()`` consults after CLI args and environment variables.

    ``None`` values are dropped so they never shadow built-in defaults.
    """
    flat = {
        **unified.api.model_dump(),
        **unified.sync.model_dump(),
        **unified.storage.model_dump(),
    }
    return {k: v for k, v in flat.items() if v is not None}
