"""Permission-filtered registry of the importer's MCP tools.

An operator can hand an agent a status-only server by listing just
``IMPORT_VIEW`` in a permissions file; tools needing ``IMPORT_RUN`` are
then never registered, so they are neither listed nor callable.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

import mcp.types as types

from ...core.client import FetchError
from ...sync.engine import SyncEngine

logger = logging.getLogger(__name__)

IMPORT_RUN = "IMPORT_RUN"
IMPORT_VIEW = "IMPORT_VIEW"
KNOWN_PERMISSIONS = frozenset({IMPORT_RUN, IMPORT_VIEW})

Handler = Callable[[SyncEngine, dict], Awaitable[types.CallToolResult]]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """One MCP tool: its definition, required permissions and handler.

    An empty ``permissions`` set means the tool is always available.
    """

    tool: types.Tool
    permissions: frozenset[str]
    handler: Handler


class ToolRegistry:
    """Tools whose permissions are covered by *allowed_permissions*.

    ``allowed_permissions=None`` registers every spec.
    """

    def __init__(
        self,
        specs: list[ToolSpec],
        allowed_permissions: frozenset[str] | None = None,
    ):
        self._specs = {
            spec.tool.name: spec
            for spec in specs
            if allowed_permissions is None
            or spec.permissions <= allowed_permissions
        }

    def list_tools(self) -> list[types.Tool]:
        return [spec.tool for spec in self._specs.values()]

    def tool_count(self) -> int:
        return len(self._specs)

    async def call_tool(
        self,
        name: str,
        arguments: dict | None,
        engine: SyncEngine,
    ) -> types.CallToolResult:
        """Run the handler registered as *name*.

        Remote fetch failures, bad parameters and unexpected exceptions
        come back as error results carrying a corrective action, so an
        agent always gets something it can act on.

        Raises:
            ValueError: If *name* is unknown or was filtered out.
        """
        from .errors import build_error_response, translate_fetch_error

        spec = self._specs.get(name)
        if spec is None:
            raise ValueError(f"Unknown tool: {name}")
        try:
            return await spec.handler(engine, arguments or {})
        except FetchError as e:
            logger.warning("Remote fetch failed in %s: %s", name, e)
            return translate_fetch_error(e)
        except ValueError as e:
            return build_error_response(
                "validation_error",
                str(e),
                "Check parameter values and retry.",
            )
        except Exception as e:
            logger.exception("Unexpected error in tool %s", name)
            return build_error_response(
                "server_error",
                str(e),
                "Check importer_status; if the run is in error, "
                "call importer_cancel with force=true, then importer_resume.",
            )


def load_permissions_file(path: str | Path) -> frozenset[str]:
    """Read the permissions granted to this server.

    One permission per line; ``#`` starts a comment and blank lines are
    skipped::

        # Status only
        IMPORT_VIEW

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If a line names an unknown permission or the file
            grants nothing.
    """
    path = Path(path)
    permissions: set[str] = set()
    for line_num, line in enumerate(path.read_text().splitlines(), 1):
        name = line.split("#", 1)[0].strip()
        if not name:
            continue
        if name not in KNOWN_PERMISSIONS:
            raise ValueError(
                f"Invalid permission '{name}' at line {line_num} in {path}. "
                f"Expected one of: {', '.join(sorted(KNOWN_PERMISSIONS))}."
            )
        permissions.add(name)
    if not permissions:
        raise ValueError(
            f"No permissions found in {path}. File must contain at least one permission."
        )
    return frozenset(permissions)
