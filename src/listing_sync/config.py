"""Runtime configuration for the listing sync engine.

Reads listings API connection settings and engine tuning from CLI args,
environment variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    LISTING_API_URL: Listings API endpoint URL (required)
    LISTING_API_USERNAME: API username (required)
    LISTING_API_PASSWORD: API password (required)
    LISTING_INSECURE: Skip SSL verification (optional, default: false)
    LISTING_DEBUG: Enable debug logging (optional, default: false)
    LISTING_CHUNK_SIZE: Listings requested per page (optional, default: 25)
    LISTING_REQUEST_TIMEOUT: Remote call timeout in seconds (optional, default: 300)
    LISTING_DATA_DIR: Directory for state, cache and local store (optional, default: .listing_sync)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

if TYPE_CHECKING:
    from .config_schema import UnifiedConfig

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_BASE_URL = "https://res.cloudinary.com/simpleview/image/upload/"


@dataclass
class Config:
    api_url: str
    username: str
    password: str
    insecure: bool = False
    debug: bool = False
    chunk_size: int = 25
    request_timeout: int = 300
    data_dir: str = ".listing_sync"
    image_base_url: str = DEFAULT_IMAGE_BASE_URL
    entity_type: str = "partners"
    stale_after_minutes: int = 30

    @property
    def state_dir(self) -> Path:
        return Path(self.data_dir) / "state"

    @property
    def cache_path(self) -> Path:
        return Path(self.data_dir) / "cache.db"

    @property
    def store_path(self) -> Path:
        return Path(self.data_dir) / "listings.db"

    @property
    def media_dir(self) -> Path:
        return Path(self.data_dir) / "media"


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If URL format is invalid, credentials are empty, or a
            numeric setting is out of range.
    """
    config.api_url = config.api_url.strip()

    if not config.api_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid API URL '{config.api_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.api_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid API URL '{config.api_url}': URL must include a hostname"
        )

    if not config.username.strip():
        raise ValueError(
            "API username cannot be empty. Set LISTING_API_USERNAME environment variable."
        )

    if not config.password.strip():
        raise ValueError(
            "API password cannot be empty. Set LISTING_API_PASSWORD environment variable."
        )

    if not (1 <= config.chunk_size <= 200):
        raise ValueError(
            f"Invalid chunk size {config.chunk_size}: must be between 1 and 200"
        )

    if not (1 <= config.request_timeout <= 3600):
        raise ValueError(
            f"Invalid request timeout {config.request_timeout}: must be between 1 and 3600 seconds"
        )

    if not config.image_base_url.endswith("/"):
        config.image_base_url += "/"

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_int_setting(
    env_key: str,
    fallbacks: dict,
    fb_key: str,
    default: int,
    lower: int,
    upper: int,
) -> int:
    """Resolve an integer setting: env > YAML > default, range-checked."""
    raw = os.getenv(env_key)
    if raw is None:
        return int(fallbacks.get(fb_key, default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {env_key} '{raw}': must be a number between {lower} and {upper}"
        ) from None
    if not (lower <= value <= upper):
        raise ValueError(
            f"Invalid {env_key} '{raw}': must be a number between {lower} and {upper}"
        )
    return value


def load_config(
    url: str | None = None,
    username: str | None = None,
    password: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    data_dir: str | None = None,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        url: Override API URL.
        username: Override API username.
        password: Override API password.
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        data_dir: Override the data directory.
        yaml_fallbacks: Flat dict of values from the YAML config file,
            used when CLI arg and env var are both unset.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If required config (URL, username, password) is missing
            after checking all sources, or any value is invalid.
    """
    fb = yaml_fallbacks or {}

    api_url = url or os.getenv("LISTING_API_URL") or fb.get("url")
    if not api_url:
        raise ValueError(
            "API URL not found. Set LISTING_API_URL environment variable, "
            "pass --url CLI argument, or add 'url' to config.yml."
        )

    api_username = (
        username or os.getenv("LISTING_API_USERNAME") or fb.get("username")
    )
    if not api_username:
        raise ValueError(
            "API username not found. Set LISTING_API_USERNAME environment variable, "
            "pass --username CLI argument, or add 'username' to config.yml."
        )

    api_password = (
        password or os.getenv("LISTING_API_PASSWORD") or fb.get("password")
    )
    if not api_password:
        raise ValueError(
            "API password not found. Set LISTING_API_PASSWORD environment variable, "
            "pass --password CLI argument, or add 'password' to config.yml."
        )

    if insecure:
        final_insecure = True
    else:
        env_insecure = _get_bool_env("LISTING_INSECURE")
        final_insecure = (
            env_insecure
            if env_insecure is not None
            else bool(fb.get("insecure", False))
        )

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("LISTING_DEBUG")
        final_debug = (
            env_debug
            if env_debug is not None
            else bool(fb.get("debug", False))
        )

    chunk_size = _get_int_setting(
        "LISTING_CHUNK_SIZE", fb, "chunk_size", 25, 1, 200
    )
    request_timeout = _get_int_setting(
        "LISTING_REQUEST_TIMEOUT", fb, "request_timeout", 300, 1, 3600
    )

    final_data_dir = (
        data_dir
        or os.getenv("LISTING_DATA_DIR")
        or fb.get("data_dir")
        or ".listing_sync"
    )

    config = Config(
        api_url=api_url.strip(),
        username=api_username.strip(),
        password=api_password.strip(),
        insecure=final_insecure,
        debug=final_debug,
        chunk_size=chunk_size,
        request_timeout=request_timeout,
        data_dir=final_data_dir,
        image_base_url=fb.get("image_base_url") or DEFAULT_IMAGE_BASE_URL,
        entity_type=fb.get("entity_type") or "partners",
        stale_after_minutes=int(fb.get("stale_after_minutes", 30)),
    )

    validate_config(config)

    return config


def load_runtime_config(
    overrides: dict[str, Any] | None = None,
) -> tuple[Config, "UnifiedConfig", list[str]]:
    """Load ``.env``, the YAML config files and the environment in one go.

    Used by both entry points (MCP server and CLI).

    Args:
        overrides: CLI values (url, username, password, insecure, debug,
            data_dir).

    Returns:
        The validated ``Config``, the parsed ``UnifiedConfig`` (for the
        logging section) and a description of the contributing sources.

    Raises:
        ValueError: If the configuration is incomplete or invalid.
    """
    from dotenv import load_dotenv

    from .config_loader import discover_config_files, load_hierarchical_config
    from .config_schema import UnifiedConfig, build_config, to_yaml_fallbacks

    # .env first, so ${VAR} interpolation in YAML can use its values
    load_dotenv()

    sources: list[str] = []
    unified = UnifiedConfig()
    config_files = discover_config_files()
    if config_files:
        unified = build_config(load_hierarchical_config())
        sources.append(f"config file: {config_files[0]}")

    overrides = overrides or {}
    config = load_config(
        url=overrides.get("url"),
        username=overrides.get("username"),
        password=overrides.get("password"),
        insecure=overrides.get("insecure", False),
        debug=overrides.get("debug", False),
        data_dir=overrides.get("data_dir"),
        yaml_fallbacks=to_yaml_fallbacks(unified),
    )

    if overrides:
        sources.append("CLI arguments")
    sources.append("environment variables")
    return config, unified, sources
