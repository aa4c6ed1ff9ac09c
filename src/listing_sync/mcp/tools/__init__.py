"""MCP tool handlers for the listing importer.

This package wraps the ``SyncEngine`` with async handlers, status
formatting, and structured error responses.
"""

from .errors import build_error_response
from .importer import IMPORTER_SPECS, IMPORTER_TOOLS
from .registry import (
    IMPORT_RUN,
    IMPORT_VIEW,
    ToolRegistry,
    ToolSpec,
    load_permissions_file,
)

ALL_SPECS: list[ToolSpec] = list(IMPORTER_SPECS)

__all__ = [
    "build_error_response",
    # Registry
    "ToolSpec",
    "ToolRegistry",
    "load_permissions_file",
    "IMPORT_RUN",
    "IMPORT_VIEW",
    # Spec lists
    "ALL_SPECS",
    "IMPORTER_SPECS",
    "IMPORTER_TOOLS",
]
