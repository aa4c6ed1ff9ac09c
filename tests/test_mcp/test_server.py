"""Tests for tool registration and routing in the MCP server.

Verifies:
- Importer tools and ping appear in handle_list_tools
- Tool calls route through the global ToolRegistry
- Unknown tools and a missing engine are reported

Handler behavior is tested in tests/test_mcp/tools/test_importer.py --
this file only covers the server layer.
"""

import asyncio
from unittest.mock import MagicMock, patch

import mcp.types as types
import pytest

from conftest import FakeListingClient, make_listing
from listing_sync.core.client import TransportError
from listing_sync.mcp.server import (
    PING_SPEC,
    build_parser,
    build_registry,
    get_engine,
    handle_call_tool,
    handle_list_tools,
    run,
    set_engine,
    set_registry,
)
from listing_sync.mcp.tools import ALL_SPECS
from listing_sync.mcp.tools.registry import IMPORT_VIEW, ToolRegistry


def _text(result: types.CallToolResult) -> str:
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


class TestToolRouting:
    def setup_method(self):
        set_registry(ToolRegistry([PING_SPEC] + ALL_SPECS))

    def teardown_method(self):
        set_registry(None)
        set_engine(None)

    def test_all_tools_listed(self):
        names = [t.name for t in asyncio.run(handle_list_tools())]

        assert names[0] == "ping"
        assert "importer_run" in names
        assert "importer_status" in names

    def test_ping_reports_total(self, make_engine):
        engine = make_engine(
            FakeListingClient(pages={1: [make_listing("1", "Alpha")]}, total=42)
        )
        set_engine(engine)

        result = asyncio.run(handle_call_tool("ping", {}))

        assert not result.isError
        assert "42 listings available" in _text(result)

    def test_ping_with_no_listings(self, make_engine):
        set_engine(make_engine(FakeListingClient()))

        result = asyncio.run(handle_call_tool("ping", {}))

        assert "0 listings available" in _text(result)

    def test_ping_connection_failure(self):
        engine = MagicMock()
        engine.fetcher.client.get_listings.side_effect = TransportError(
            "connection refused"
        )
        set_engine(engine)

        result = asyncio.run(handle_call_tool("ping", {}))

        assert result.isError
        assert "connection refused" in _text(result)

    def test_status_routed_to_importer(self, make_engine):
        set_engine(make_engine(FakeListingClient()))

        result = asyncio.run(handle_call_tool("importer_status", None))

        assert result.structuredContent["status"] == "free"

    def test_unknown_tool(self):
        set_engine(MagicMock())

        result = asyncio.run(handle_call_tool("importer_purge", {}))

        assert result.isError
        assert "unknown_tool" in _text(result)


class TestPermissionFiltering:
    def teardown_method(self):
        set_registry(None)
        set_engine(None)

    def test_view_only_hides_run_tools(self):
        set_registry(
            ToolRegistry([PING_SPEC] + ALL_SPECS, frozenset({IMPORT_VIEW}))
        )
        set_engine(MagicMock())

        names = [t.name for t in asyncio.run(handle_list_tools())]
        result = asyncio.run(
            handle_call_tool("importer_run", {"action": "import_all"})
        )

        assert names == ["ping", "importer_status"]
        assert result.isError
        assert "unknown_tool" in _text(result)


def test_get_engine_before_lifespan():
    set_engine(None)
    with pytest.raises(RuntimeError, match="not initialized"):
        get_engine()


class TestBuildRegistry:
    def test_all_tools_without_permissions_file(self):
        registry = build_registry()
        assert registry.tool_count() == len(ALL_SPECS) + 1

    def test_permissions_file_filters(self, tmp_path):
        perms = tmp_path / "view.permissions"
        perms.write_text("# status only\nIMPORT_VIEW\n")

        names = [t.name for t in build_registry(str(perms)).list_tools()]

        assert names == ["ping", "importer_status"]

    def test_missing_permissions_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            build_registry(str(tmp_path / "missing"))


class TestRun:
    def test_parser_shares_connection_flags(self):
        args = build_parser().parse_args(
            ["--url", "https://crm.local/api", "--insecure"]
        )
        assert args.url == "https://crm.local/api"
        assert args.insecure is True
        assert args.log_file == "/tmp/listing-sync.log"

    def test_run_passes_overrides(self):
        with patch(
            "listing_sync.mcp.server.main", new=MagicMock(return_value=None)
        ) as mock_main, patch("listing_sync.mcp.server.asyncio.run"):
            run(["--data-dir", "/data", "--permissions-file", "p.txt"])

        mock_main.assert_called_once_with(
            config_overrides={"data_dir": "/data"},
            log_file="/tmp/listing-sync.log",
            permissions_file="p.txt",
        )

    def test_startup_failure_exits_1(self):
        with patch(
            "listing_sync.mcp.server.main", new=MagicMock(return_value=None)
        ), patch(
            "listing_sync.mcp.server.asyncio.run",
            side_effect=RuntimeError("Configuration error"),
        ):
            with pytest.raises(SystemExit) as exc_info:
                run([])

        assert exc_info.value.code == 1
