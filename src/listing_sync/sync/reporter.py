"""Status formatting functions.

Provides human-readable and machine-readable output for sync runs:

- ``format_status`` -- one-screen summary of a run state or phase result.
- ``format_progress`` -- single progress line for step-by-step drivers.
- ``status_to_json`` -- structured dict for MCP tool output.
"""

from __future__ import annotations

from typing import Any

from .models import Outcome, PhaseResult, RunState

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_status(status: RunState | PhaseResult) -> str:
    """Format a run state or phase result as human-readable text.

    Failed phase results only show their error message.

    Args:
        status: The state to report.

    Returns:
        Multi-line formatted string.
    """
    if isinstance(status, PhaseResult) and not status.ok:
        return f"Error: {status.message}"

    lines: list[str] = []
    header = f"Status: {status.status.value}"
    if status.method:
        header += f" ({status.method})"
    lines.append(header)
    if status.timestamp:
        lines.append(f"Updated: {status.timestamp}")
    lines.append("")

    lines.append(
        f"Processed {status.processed} of {status.total}: "
        f"{status.added} added, {status.deleted} deleted"
    )
    if status.page:
        lines.append(f"Page: {status.page}")

    if isinstance(status, PhaseResult):
        lines.append(f"Outcome: {status.outcome.value}")
        if status.outcome == Outcome.CONTINUE and status.next is not None:
            lines.append(f"Next: {_describe_next(status)}")

    return "\n".join(lines)


def format_progress(step: int, result: PhaseResult) -> str:
    """One line describing a driver step, e.g. for CLI progress output."""
    if not result.ok:
        return f"[{step}] error: {result.message}"
    percent = ""
    if result.total:
        percent = f" ({min(100, result.processed * 100 // result.total)}%)"
    return (
        f"[{step}] {result.method or '-'}: "
        f"{result.processed}/{result.total}{percent}, "
        f"added {result.added}, deleted {result.deleted} "
        f"-> {result.outcome.value}"
    )


def _describe_next(result: PhaseResult) -> str:
    nxt = result.next
    parts = [f"{nxt.action}/{nxt.phase.value}"]
    if nxt.page:
        parts.append(f"page {nxt.page}")
    if nxt.date:
        parts.append(f"since {nxt.date}")
    if nxt.init_mode:
        parts.append(f"init {nxt.init_mode.value}")
    return ", ".join(parts)


# ------------------------------------------------------------------
# Machine-readable output
# ------------------------------------------------------------------


def status_to_json(status: RunState | PhaseResult) -> dict[str, Any]:
    """Convert a run state or phase result to a JSON-serializable dict.

    Phase results use the wire shape of ``PhaseResult.to_dict()``; a bare
    run state is reported with its fields only.
    """
    if isinstance(status, PhaseResult):
        return status.to_dict()
    return status.model_dump(mode="json")
