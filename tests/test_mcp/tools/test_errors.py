"""Tests for mcp/tools/errors.py: error response builders.

Covers:
- build_error_response() structure and format
- translate_fetch_error() mapping of remote failures
- translate_phase_failure() mapping of engine failure messages
"""

import mcp.types as types
import pytest

from listing_sync.core.client import (
    EmptyResultError,
    SourceError,
    TransportError,
)
from listing_sync.mcp.tools.errors import (
    build_error_response,
    translate_fetch_error,
    translate_phase_failure,
)
from listing_sync.sync.models import PhaseResult


def _get_error_text(result: types.CallToolResult) -> str:
    """Extract text from first content item with type narrowing for Pyright."""
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


# ---------------------------------------------------------------------------
# build_error_response tests
# ---------------------------------------------------------------------------


class TestBuildErrorResponse:
    """Tests for build_error_response()."""

    def test_is_error_flag(self):
        """isError is set to True."""
        result = build_error_response("busy", "Busy", "Wait")
        assert isinstance(result, types.CallToolResult)
        assert result.isError is True

    def test_single_text_content(self):
        result = build_error_response("busy", "Busy", "Wait")
        assert len(result.content) == 1
        assert result.content[0].type == "text"

    def test_error_format(self):
        """Text format is 'Error ({type}): {message}\\n\\nAction: {action}'."""
        result = build_error_response(
            "validation_error", "Bad date", "Use YYYY-MM-DD"
        )
        assert _get_error_text(result) == (
            "Error (validation_error): Bad date\n\nAction: Use YYYY-MM-DD"
        )


# ---------------------------------------------------------------------------
# translate_fetch_error tests
# ---------------------------------------------------------------------------


class TestTranslateFetchError:
    """Tests for translate_fetch_error()."""

    def test_empty_result(self):
        text = _get_error_text(
            translate_fetch_error(EmptyResultError("getListings: no results"))
        )
        assert text.startswith("Error (empty_result): getListings: no results")

    def test_source_error(self):
        error = SourceError("getListings", ["Invalid login"])
        text = _get_error_text(translate_fetch_error(error))
        assert "Error (source_error)" in text
        assert "Invalid login" in text
        assert "credentials" in text

    def test_transport_error(self):
        text = _get_error_text(translate_fetch_error(TransportError("timeout")))
        assert "Error (transport_error): timeout" in text
        assert "importer_resume" in text


# ---------------------------------------------------------------------------
# translate_phase_failure tests
# ---------------------------------------------------------------------------


class TestTranslatePhaseFailure:
    """Tests for translate_phase_failure()."""

    @pytest.mark.parametrize(
        "message,error_type",
        [
            (
                "While running import_all: Process failed preflight checks",
                "busy",
            ),
            (
                "In delete_stale at page #1: No or empty result returned (x)",
                "empty_result",
            ),
            ("While running import_new: No or invalid date given", "validation_error"),
            (
                "While running import_single: No or invalid listing ID given",
                "validation_error",
            ),
            ("No previous run to resume", "not_found"),
            ("Unknown action 'nope'", "validation_error"),
        ],
    )
    def test_message_selects_error_type(self, message, error_type):
        result = translate_phase_failure(PhaseResult.failure(message))
        assert result.isError is True
        assert _get_error_text(result).startswith(
            f"Error ({error_type}): {message}"
        )
