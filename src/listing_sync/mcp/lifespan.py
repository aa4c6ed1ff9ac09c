"""Lifespan management for MCP server startup and shutdown."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from ..config import load_runtime_config
from ..core.async_utils import run_sync
from ..sync.engine import SyncEngine

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback (safe in MCP mode)."""
    print(msg, file=sys.stderr, flush=True)


@asynccontextmanager
async def server_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage server startup and shutdown lifecycle.

    On startup:
    - Load .env and YAML config, merge with CLI overrides via load_config()
    - Build the SyncEngine (run state, page cache, local store)
    - Fail fast if the local entity type is not available
    - Report the current run state, so a stuck run is visible at once

    On shutdown:
    - Close the page cache and the local store

    Args:
        config_overrides: Optional dict with config values from CLI
            (url, username, password, insecure, data_dir)

    Yields:
        Dict with 'engine' key containing the initialized SyncEngine

    Raises:
        RuntimeError: If configuration is invalid or the store is unusable.
    """
    logger.info("MCP server starting...")
    _stderr_print("Listing Sync MCP Server starting...")

    try:
        config, _, sources = load_runtime_config(config_overrides)
        source_desc = ", ".join(sources)
        logger.info("Configuration loaded from: %s", source_desc)
        _stderr_print(f"  Configuration loaded from: {source_desc}")
        logger.info("API URL: %s", config.api_url)
        _stderr_print(f"  API URL: {config.api_url}")
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        _stderr_print(
            "  Ensure LISTING_API_URL, LISTING_API_USERNAME, LISTING_API_PASSWORD are set."
        )
        raise RuntimeError(
            f"Configuration error: {e}. Ensure LISTING_API_URL, "
            "LISTING_API_USERNAME, LISTING_API_PASSWORD are set."
        ) from e

    try:
        engine = await run_sync(SyncEngine.from_config, config)
        available = await run_sync(engine.store.entity_type_available)
        if not available:
            raise RuntimeError(
                f"Entity type '{config.entity_type}' is not available"
            )
        state = await run_sync(engine.fetch_status)
        logger.info("Run state: %s", state.status.value)
        _stderr_print(f"  Data directory: {config.data_dir}")
        _stderr_print(f"  Run state: {state.status.value}")
        _stderr_print(
            "Server ready. Waiting for MCP client connection..."
        )
    except Exception as e:
        logger.error("Failed to initialize sync engine: %s", e)
        _stderr_print("ERROR: Sync engine initialization failed.")
        _stderr_print(f"  {e}")
        raise RuntimeError(
            f"Sync engine initialization failed: {e}. Check LISTING_DATA_DIR."
        ) from e

    try:
        yield {"engine": engine, "config": config}
    finally:
        engine.cache.close()
        engine.store.close()
        logger.info("MCP server shutting down")
        _stderr_print("Listing Sync MCP Server shutting down.")
