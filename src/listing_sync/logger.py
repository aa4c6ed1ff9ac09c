"""Logging setup shared by the CLI and the MCP server.

The MCP server talks JSON-RPC over stdout, so in ``mcp`` mode records go
to a file only. The CLI logs to stderr and optionally to a file as well.
"""

import json
import logging
import os
import sys

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MCP_LOG_FILE = "/tmp/listing-sync.log"

# Attributes the engine attaches through ``extra=``
CONTEXT_FIELDS = ("action", "phase", "page")

NOISY_LOGGERS = ("urllib3", "requests")


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg.

    Run context passed with ``extra={"action": ..., "phase": ...}`` is
    copied through, and a traceback lands under ``exc``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _formatter(log_format: str, with_name: bool) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter(datefmt=DATE_FORMAT)
    name = " %(name)s" if with_name else ""
    return logging.Formatter(
        f"[%(asctime)s] [%(levelname)s]{name} %(message)s", datefmt=DATE_FORMAT
    )


def resolve_level(mode: str, debug: bool = False, level: str | None = None) -> int:
    """Pick the effective level.

    ``debug`` wins, then ``LOG_LEVEL``, then *level* (the ``logging.level``
    config value), then WARNING for ``mcp`` and INFO otherwise. Unknown
    names fall back to INFO.
    """
    if debug:
        return logging.DEBUG
    name = os.getenv("LOG_LEVEL") or level or ("WARNING" if mode == "mcp" else "INFO")
    resolved = logging.getLevelName(name.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    debug_format: str = "text",
    level: str | None = None,
) -> None:
    """Configure the root logger for *mode*.

    Args:
        mode: ``"mcp"`` logs to a file only; ``"cli"`` logs to stderr.
        debug: Force DEBUG regardless of other settings.
        log_file: Log file. In ``mcp`` mode it defaults to ``LOG_FILE``,
            then ``/tmp/listing-sync.log``; in ``cli`` mode it adds a
            second handler.
        debug_format: ``"text"`` or ``"json"``.
        level: Level name from the config file; see ``resolve_level``.
    """
    log_level = resolve_level(mode, debug, level)

    if mode == "mcp":
        logging.basicConfig(
            level=log_level,
            format="[%(asctime)s] [%(levelname)s] %(message)s",
            datefmt=DATE_FORMAT,
            filename=log_file or os.getenv("LOG_FILE", DEFAULT_MCP_LOG_FILE),
            filemode="a",
        )
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(_formatter(debug_format, with_name=False))
        handlers: list[logging.Handler] = [stderr_handler]
        if log_file:
            file_handler = logging.FileHandler(log_file, mode="a")
            file_handler.setFormatter(_formatter(debug_format, with_name=True))
            handlers.append(file_handler)
        logging.basicConfig(level=log_level, handlers=handlers)

    if log_level != logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
