"""Tests for listing_sync.mcp.lifespan -- server startup/shutdown lifecycle.

Tests the server_lifespan() async context manager which:
- Loads config (with optional CLI overrides)
- Builds the SyncEngine and checks the entity type is usable
- Fails fast on config errors or storage failures
- Closes the page cache and local store on shutdown
"""

from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeListingClient
from listing_sync.config_schema import UnifiedConfig
from listing_sync.mcp.lifespan import server_lifespan
from listing_sync.sync.engine import SyncEngine
from listing_sync.sync.models import RunState, RunStatus

# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------


@pytest.fixture
def lifespan_patches(mock_config):
    """Patch config loading and engine construction around server_lifespan."""
    engine = SyncEngine.from_config(mock_config, client=FakeListingClient())
    with (
        patch(
            "listing_sync.mcp.lifespan.load_runtime_config",
            return_value=(mock_config, UnifiedConfig(), ["environment variables"]),
        ) as mock_load,
        patch.object(
            SyncEngine, "from_config", return_value=engine
        ) as mock_build,
        patch("listing_sync.mcp.lifespan._stderr_print") as mock_print,
    ):
        yield {
            "engine": engine,
            "load": mock_load,
            "build": mock_build,
            "print": mock_print,
        }
    engine.cache.close()
    engine.store.close()


def _printed(mock_print) -> str:
    return "\n".join(str(call.args[0]) for call in mock_print.call_args_list)


# -------------------------------------------------------------------------
# Successful startup
# -------------------------------------------------------------------------


class TestServerLifespanSuccess:
    async def test_yields_engine_and_config(self, lifespan_patches, mock_config):
        async with server_lifespan() as ctx:
            assert ctx["engine"] is lifespan_patches["engine"]
            assert ctx["config"] is mock_config

        lifespan_patches["build"].assert_called_once_with(mock_config)

    async def test_overrides_passed_to_config_loader(self, lifespan_patches):
        overrides = {"url": "http://crm.local", "insecure": True}

        async with server_lifespan(config_overrides=overrides):
            pass

        lifespan_patches["load"].assert_called_once_with(overrides)

    async def test_reports_run_state(self, lifespan_patches):
        lifespan_patches["engine"].states.save(
            RunState(status=RunStatus.FREE_CANCELED)
        )

        async with server_lifespan():
            pass

        output = _printed(lifespan_patches["print"])
        assert "Run state: free:canceled" in output
        assert "Server ready" in output

    async def test_shutdown_closes_storage(self, lifespan_patches):
        engine = MagicMock()
        engine.store.entity_type_available.return_value = True
        lifespan_patches["build"].return_value = engine

        async with server_lifespan():
            engine.cache.close.assert_not_called()

        engine.cache.close.assert_called_once()
        engine.store.close.assert_called_once()

    async def test_shutdown_runs_after_handler_error(self, lifespan_patches):
        engine = MagicMock()
        engine.store.entity_type_available.return_value = True
        lifespan_patches["build"].return_value = engine

        with pytest.raises(KeyError):
            async with server_lifespan():
                raise KeyError("boom")

        engine.store.close.assert_called_once()


# -------------------------------------------------------------------------
# Startup failures
# -------------------------------------------------------------------------


class TestServerLifespanFailures:
    async def test_config_error_becomes_runtime_error(self, lifespan_patches):
        lifespan_patches["load"].side_effect = ValueError("API URL not found")

        with pytest.raises(RuntimeError, match="Configuration error"):
            async with server_lifespan():
                pass

        assert "LISTING_API_URL" in _printed(lifespan_patches["print"])
        lifespan_patches["build"].assert_not_called()

    async def test_unavailable_entity_type(self, lifespan_patches):
        engine = MagicMock()
        engine.store.entity_type_available.return_value = False
        lifespan_patches["build"].return_value = engine

        with pytest.raises(RuntimeError, match="is not available"):
            async with server_lifespan():
                pass

    async def test_storage_error_becomes_runtime_error(self, lifespan_patches):
        lifespan_patches["build"].side_effect = OSError("read-only")

        with pytest.raises(
            RuntimeError, match="Sync engine initialization failed: read-only"
        ):
            async with server_lifespan():
                pass

        assert "initialization failed" in _printed(lifespan_patches["print"])
