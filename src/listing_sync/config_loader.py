"""YAML config files for listing-sync.

Files are looked up by convention, may pull in other files with
``!include`` (typically a secrets file holding the API password) and may
reference the environment with ``${VAR}`` / ``${VAR:-default}``.

Lookup order, highest precedence first:

1. the file named by ``LISTING_SYNC_CONFIG``
2. ``.listing_sync/config.yml`` in the working directory
3. ``.listing_sync/config.yaml`` in the working directory
4. ``~/.config/listing_sync/config.yml``

Files are merged section by section; a section from a higher-precedence
file replaces the whole section from a lower one.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".listing_sync"
CONFIG_ENV_VAR = "LISTING_SYNC_CONFIG"

_ENV_REF = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


# ---------------------------------------------------------------------------
# Environment references
# ---------------------------------------------------------------------------


def interpolate_env_vars(value: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` in *value*.

    An unset or empty variable expands to its default, or to ``""`` when
    there is none. An unterminated ``${`` is kept as is.
    """

    def _expand(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        return os.environ.get(name) or (default if default is not None else "")

    return _ENV_REF.sub(_expand, value)


def _interpolate_recursive(obj: Any) -> Any:
    match obj:
        case str():
            return interpolate_env_vars(obj)
        case dict():
            return {key: _interpolate_recursive(val) for key, val in obj.items()}
        case list():
            return [_interpolate_recursive(item) for item in obj]
        case _:
            return obj


# ---------------------------------------------------------------------------
# !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader that understands ``!include``.

    Registered on this subclass only; ``yaml.safe_load`` is unaffected.
    """

    include_chain: list[Path]


def _include(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    target = Path(loader.construct_scalar(node))
    if not target.is_absolute():
        # Relative to the including file, not the working directory
        target = Path(loader.name).resolve().parent / target
    target = target.resolve()

    if target in loader.include_chain:
        chain = " -> ".join(str(p) for p in [*loader.include_chain, target])
        raise ValueError(f"Circular include detected: {chain}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} "
            f"(referenced from {Path(loader.name).resolve()})"
        )
    return _load_yaml_with_includes(
        target, _include_stack=[*loader.include_chain, target]
    )


ConfigLoader.add_constructor("!include", _include)


def _load_yaml_with_includes(
    path: Path,
    *,
    _include_stack: list[Path] | None = None,
) -> Any:
    path = path.resolve()
    with open(path, encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader.include_chain = _include_stack or [path]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def _candidate_paths() -> list[Path]:
    candidates = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())
    project = Path.cwd() / CONFIG_DIR_NAME
    candidates += [project / "config.yml", project / "config.yaml"]
    candidates.append(Path.home() / ".config" / "listing_sync" / "config.yml")
    return candidates


def discover_config_files() -> list[Path]:
    """Existing config files, highest precedence first."""
    return [path for path in _candidate_paths() if path.exists()]


def resolve_config_path() -> Path:
    """The file ``ensure_config`` would use: the highest-precedence
    existing file, else ``./.listing_sync/config.yml``."""
    existing = discover_config_files()
    if existing:
        return existing[0]
    return Path.cwd() / CONFIG_DIR_NAME / "config.yml"


_STARTER_CONFIG = """\
# listing-sync configuration
#
# API connection settings can also be set via environment variables:
#   LISTING_API_URL, LISTING_API_USERNAME, LISTING_API_PASSWORD,
#   LISTING_INSECURE, LISTING_CHUNK_SIZE, LISTING_REQUEST_TIMEOUT
#
# api:
#   url: https://crm.example.com/webapi/listings/xml/listings.cfm
#   username: ${LISTING_API_USERNAME}
#   password: ${LISTING_API_PASSWORD}
#   insecure: false
#   request_timeout: 300
#   image_base_url: https://res.cloudinary.com/simpleview/image/upload/
#
# sync:
#   chunk_size: 25
#   stale_after_minutes: 30
#   entity_type: partners
#
# storage:
#   data_dir: .listing_sync
#
# logging:
#   level: INFO
#   file: null
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the config file in use, writing a commented starter file
    at *target* (default: ``resolve_config_path()``) when none exists."""
    existing = discover_config_files()
    if existing:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    path = target or resolve_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", path)
    return path


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Merge every discovered file into one raw dict.

    Lower-precedence files are applied first so higher ones replace whole
    top-level sections. Environment references are expanded after the
    merge. Returns ``{}`` when no file exists.

    Raises:
        yaml.YAMLError: If a file is not valid YAML.
        FileNotFoundError: If an ``!include`` target is missing.
        ValueError: If includes form a cycle.
    """
    merged: dict[str, Any] = {}
    for path in reversed(discover_config_files()):
        logger.debug("Loading config: %s", path)
        try:
            data = _load_yaml_with_includes(path)
        except (yaml.YAMLError, OSError, ValueError):
            logger.exception("Failed to load config file %s", path)
            raise
        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has a %s at its root, skipping",
                path,
                type(data).__name__,
            )
    return _interpolate_recursive(merged)
