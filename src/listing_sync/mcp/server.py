"""MCP server exposing the listing importer over stdio.

MCP clients (AI agents, operator tooling) use the ``importer_*`` tools to
start, cancel, resume and watch sync runs. Each tool call executes at
most one engine step, so a client drives a long import the same way the
CLI's ``--until-complete`` loop does.
"""

import argparse
import asyncio
import logging
import sys

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from .. import __version__
from ..cli import add_connection_args, connection_overrides
from ..core.async_utils import run_sync
from ..core.client import EmptyResultError, FetchError
from ..logger import setup_logging
from ..sync.engine import SyncEngine
from .lifespan import server_lifespan
from .tools import (
    ALL_SPECS,
    ToolRegistry,
    build_error_response,
    load_permissions_file,
)
from .tools.registry import ToolSpec

logger = logging.getLogger(__name__)

SERVER_NAME = "listing-sync"
DEFAULT_LOG_FILE = "/tmp/listing-sync.log"

server = Server(SERVER_NAME)

# Set while the server runs; tool handlers receive the engine explicitly
_engine: SyncEngine | None = None
_registry: ToolRegistry | None = None


# ---------------------------------------------------------------------------
# Ping tool (always available, no permission required)
# ---------------------------------------------------------------------------


async def _handle_ping(
    engine: SyncEngine, args: dict
) -> types.CallToolResult:
    """Request a one-listing page to prove the credentials work."""
    try:
        response = await run_sync(engine.fetcher.client.get_listings, 1, 1)
        total = response.total
    except EmptyResultError:
        total = 0
    except FetchError as e:
        return build_error_response(
            "connection_error",
            f"Listings API connection failed: {e}",
            "Check LISTING_API_URL, LISTING_API_USERNAME and LISTING_API_PASSWORD.",
        )
    return types.CallToolResult(
        content=[
            types.TextContent(
                type="text",
                text=f"Listings API connected successfully. {total} listings available.",
            )
        ]
    )


PING_SPEC = ToolSpec(
    tool=types.Tool(
        name="ping",
        description="Test listings API connectivity and return the number of listings",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    permissions=frozenset(),
    handler=_handle_ping,
)


# ---------------------------------------------------------------------------
# Global accessors
# ---------------------------------------------------------------------------


def get_engine() -> SyncEngine:
    if _engine is None:
        raise RuntimeError(
            "SyncEngine not initialized. Server lifespan not started."
        )
    return _engine


def set_engine(engine: SyncEngine | None) -> None:
    global _engine
    _engine = engine


def get_registry() -> ToolRegistry:
    if _registry is None:
        raise RuntimeError("ToolRegistry not initialized.")
    return _registry


def set_registry(registry: ToolRegistry | None) -> None:
    global _registry
    _registry = registry


def build_registry(permissions_file: str | None = None) -> ToolRegistry:
    """Register ping plus the importer tools allowed by *permissions_file*.

    Raises:
        FileNotFoundError: If the permissions file does not exist.
        ValueError: If the permissions file is empty or malformed.
    """
    allowed = None
    if permissions_file:
        allowed = load_permissions_file(permissions_file)
        logger.info(
            "Loaded %d permissions from %s", len(allowed), permissions_file
        )
    specs = [PING_SPEC, *ALL_SPECS]
    registry = ToolRegistry(specs, allowed)
    logger.info(
        "Registered %d tools (of %d total)", registry.tool_count(), len(specs)
    )
    return registry


# ---------------------------------------------------------------------------
# MCP protocol handlers
# ---------------------------------------------------------------------------


@server.list_tools()
async def handle_list_tools() -> list[types.Tool]:
    return get_registry().list_tools()


@server.call_tool()
async def handle_call_tool(
    name: str, arguments: dict | None
) -> types.CallToolResult:
    engine = get_engine()
    try:
        return await get_registry().call_tool(name, arguments, engine)
    except ValueError as e:
        # Unknown or filtered-out tool name
        return build_error_response(
            "unknown_tool",
            str(e),
            "Use list_tools to see available tools.",
        )


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


async def main(
    config_overrides: dict | None = None,
    log_file: str | None = None,
    permissions_file: str | None = None,
) -> None:
    """Serve the importer tools over stdio until the client disconnects.

    Args:
        config_overrides: Connection overrides from the command line
            (url, username, password, insecure, data_dir).
        log_file: Log file path; stdout belongs to the JSON-RPC stream.
        permissions_file: Optional file restricting the exposed tools.
    """
    # Must run BEFORE stdio_server so nothing reaches stdout
    setup_logging(mode="mcp", log_file=log_file)

    registry = build_registry(permissions_file)
    if permissions_file:
        print(
            f"Permissions file: {permissions_file} "
            f"({registry.tool_count()} tools enabled)",
            file=sys.stderr,
        )
    set_registry(registry)

    # The engine is published here rather than inside the lifespan: under
    # ``python -m`` this module is __main__ and would otherwise be imported
    # a second time.
    async with server_lifespan(config_overrides=config_overrides) as ctx:
        set_engine(ctx["engine"])
        init_options = InitializationOptions(
            server_name=SERVER_NAME,
            server_version=__version__,
            capabilities=server.get_capabilities(
                notification_options=NotificationOptions(),
                experimental_capabilities={},
            ),
        )
        try:
            async with mcp.server.stdio.stdio_server() as (reader, writer):
                await server.run(reader, writer, init_options)
        finally:
            set_engine(None)
            set_registry(None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="listing-sync-mcp",
        description="Listing Sync MCP Server - run and watch listing imports over MCP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with default config (from .env or .listing_sync/config.yml)
  listing-sync-mcp

  # Status-only deployment
  listing-sync-mcp --permissions-file /etc/listing-sync/view.permissions

All user-facing messages are written to stderr; stdout carries JSON-RPC.
        """,
    )
    add_connection_args(parser)
    parser.add_argument(
        "--log-file",
        default=DEFAULT_LOG_FILE,
        help=f"Log file path (default: {DEFAULT_LOG_FILE})",
    )
    parser.add_argument(
        "--permissions-file",
        help="File restricting the available tools, one permission per line "
        "(IMPORT_RUN, IMPORT_VIEW), # for comments. All tools when omitted.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"listing-sync-mcp version {__version__}",
    )
    return parser


def run(argv: list[str] | None = None) -> None:
    """Console entry point for ``listing-sync-mcp``."""
    args = build_parser().parse_args(argv)
    overrides = connection_overrides(args)
    if overrides:
        shown = ", ".join(k for k in overrides if k != "password")
        print(f"Config overrides from CLI: {shown}", file=sys.stderr)

    try:
        asyncio.run(
            main(
                config_overrides=overrides or None,
                log_file=args.log_file,
                permissions_file=args.permissions_file,
            )
        )
    except (RuntimeError, OSError, ValueError) as e:
        # Lifespan failures are already reported on stderr
        if not isinstance(e, RuntimeError):
            print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    run()
