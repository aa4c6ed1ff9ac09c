"""Error response builders for MCP tool handlers.

Structured error responses carry a corrective action so AI agents can
recover without human intervention.
"""

import mcp.types as types

from ...core.client import EmptyResultError, FetchError, SourceError
from ...sync.models import PhaseResult


def build_error_response(
    error_type: str, message: str, corrective_action: str
) -> types.CallToolResult:
    """Build a structured error response with corrective action.

    Args:
        error_type: Error category (validation_error, busy, empty_result,
            source_error, transport_error, server_error)
        message: Human-readable error description
        corrective_action: Specific action the agent can take to resolve the error

    Returns:
        CallToolResult with isError=True

    Examples:
        >>> build_error_response("busy", "Process failed preflight checks", "Call importer_status.")
        CallToolResult(content=[TextContent(...)], isError=True)
    """
    error_text = f"Error ({error_type}): {message}\n\nAction: {corrective_action}"

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=error_text)],
        isError=True,
    )


def translate_fetch_error(error: FetchError) -> types.CallToolResult:
    """Translate a remote fetch failure to a structured error response."""
    match error:
        case EmptyResultError():
            return build_error_response(
                "empty_result",
                str(error),
                "Nothing to import for this window; try an earlier date.",
            )
        case SourceError():
            return build_error_response(
                "source_error",
                str(error),
                "Check the API credentials and request parameters.",
            )
        case _:
            return build_error_response(
                "transport_error",
                str(error),
                "Check LISTING_API_URL and network connectivity, then importer_resume.",
            )


def translate_phase_failure(result: PhaseResult) -> types.CallToolResult:
    """Translate a failed engine result into an error response.

    The engine reports failures as messages; the message decides which
    corrective action fits.
    """
    message = result.message or "Unknown failure"
    lowered = message.lower()

    match lowered:
        case s if "preflight" in s:
            return build_error_response(
                "busy",
                message,
                "Another run holds the importer. Call importer_status; "
                "cancel it with importer_cancel if it is stuck.",
            )
        case s if "empty result" in s:
            return build_error_response(
                "empty_result",
                message,
                "Nothing to process for these parameters; progress was kept.",
            )
        case s if "date" in s or "listing id" in s:
            return build_error_response(
                "validation_error",
                message,
                "Pass date as YYYY-MM-DD and listing_id as a positive number.",
            )
        case s if "resume" in s:
            return build_error_response(
                "not_found",
                message,
                "Start a run with importer_run instead.",
            )
        case _:
            return build_error_response(
                "validation_error",
                message,
                "Check the action name and parameters, then retry.",
            )
