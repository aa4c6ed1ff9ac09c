"""MCP tool handlers for the listing importer.

Defines four tools:

- ``importer_run`` -- run one step (or every step) of an action.
- ``importer_resume`` -- continue the action in the last-run snapshot.
- ``importer_cancel`` -- cancel the running phase (``force`` to recover).
- ``importer_status`` -- current run state and last-run snapshot.

Engine calls block on remote requests, so every handler goes through
``run_sync``; a cancel can then be served while a phase runs.
"""

from __future__ import annotations

import logging
from typing import Any

import mcp.types as types

from ...core.async_utils import run_sync
from ...sync.driver import drive
from ...sync.engine import SyncEngine
from ...sync.models import (
    ACTION_KINDS,
    InitMode,
    Outcome,
    Phase,
    PhaseParams,
    PhaseResult,
)
from ...sync.reporter import format_status, status_to_json
from .errors import translate_phase_failure
from .registry import IMPORT_RUN, IMPORT_VIEW, ToolSpec

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

_STEP_PROPERTIES: dict[str, Any] = {
    "until_complete": {
        "type": "boolean",
        "default": False,
        "description": (
            "Keep invoking the engine with each continuation until the "
            "action completes, fails or is canceled"
        ),
    },
    "max_steps": {
        "type": "integer",
        "minimum": 1,
        "description": "With until_complete, stop after this many steps",
    },
}

IMPORTER_TOOLS: list[types.Tool] = [
    types.Tool(
        name="importer_run",
        description=(
            "Run one chunk of an import/delete/cache action against the "
            "listings API. The result carries 'next' parameters while "
            "work remains; pass them back to continue."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=True,
            idempotentHint=False,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": list(ACTION_KINDS),
                    "description": "Action to run",
                },
                "init_mode": {
                    "type": "string",
                    "enum": ["hard", "soft", "resume"],
                    "default": "hard",
                    "description": (
                        "hard: fresh start; soft: next phase of the same "
                        "action; resume: continue from the last snapshot"
                    ),
                },
                "date": {
                    "type": "string",
                    "description": "Start of the date window (YYYY-MM-DD)",
                },
                "listing_id": {
                    "type": "string",
                    "description": "Listing id for import_single",
                },
                "page": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Explicit page to fetch",
                },
                "phase": {
                    "type": "string",
                    "enum": [phase.value for phase in Phase],
                    "description": "Phase of a multi-phase action",
                },
                **_STEP_PROPERTIES,
            },
            "required": ["action"],
        },
    ),
    types.Tool(
        name="importer_resume",
        description=(
            "Continue the last (interrupted or canceled) run from its "
            "snapshot, without repeating completed records."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=True,
            idempotentHint=True,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": dict(_STEP_PROPERTIES),
            "required": [],
        },
    ),
    types.Tool(
        name="importer_cancel",
        description=(
            "Cancel the running phase at its next record. With force=true "
            "a stuck or failed run is released immediately."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "force": {
                    "type": "boolean",
                    "default": False,
                    "description": "Release the run state without waiting",
                },
            },
            "required": [],
        },
    ),
    types.Tool(
        name="importer_status",
        description=(
            "Show the importer run state (free, running, busy, error) "
            "with progress counters and the last-run snapshot."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_params(args: dict[str, Any]) -> PhaseParams:
    """Translate tool arguments into engine parameters.

    Raises:
        ValueError: If a value has the wrong type or range.
    """
    init = args.get("init_mode", "hard")
    init_mode = None if init in (None, "", "resume") else InitMode(init)
    listing_id = args.get("listing_id")
    return PhaseParams(
        init_mode=init_mode,
        date=args.get("date") or None,
        listing_id=str(listing_id) if listing_id not in (None, "") else None,
        page=args.get("page"),
        phase=Phase(args["phase"]) if args.get("phase") else None,
    )


def _result_response(result: PhaseResult) -> types.CallToolResult:
    if not result.ok:
        return translate_phase_failure(result)
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=format_status(result))],
        structuredContent=status_to_json(result),
    )


async def _continue(
    engine: SyncEngine, result: PhaseResult, args: dict[str, Any]
) -> PhaseResult:
    """Follow continuations of *result* when ``until_complete`` is set."""
    if not args.get("until_complete"):
        return result
    if result.outcome != Outcome.CONTINUE or result.next is None:
        return result
    max_steps = args.get("max_steps")
    if max_steps is not None:
        max_steps = int(max_steps) - 1
        if max_steps < 1:
            return result
    return await run_sync(
        drive,
        engine,
        result.next.action,
        result.next.to_params(),
        max_steps,
    )


# ---------------------------------------------------------------------------
# Individual handlers
# ---------------------------------------------------------------------------


async def _handle_importer_run(
    engine: SyncEngine, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``importer_run`` tool."""
    action = args.get("action")
    if not action:
        raise ValueError("action is required")
    params = _build_params(args)

    logger.info("importer_run %s (%s)", action, params.init_mode)
    result = await run_sync(engine.run_phase, action, params)
    result = await _continue(engine, result, args)
    return _result_response(result)


async def _handle_importer_resume(
    engine: SyncEngine, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``importer_resume`` tool."""
    result = await run_sync(engine.resume)
    result = await _continue(engine, result, args)
    return _result_response(result)


async def _handle_importer_cancel(
    engine: SyncEngine, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``importer_cancel`` tool."""
    force = bool(args.get("force", False))
    result = await run_sync(engine.cancel, force)
    return _result_response(result)


async def _handle_importer_status(
    engine: SyncEngine, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``importer_status`` tool."""
    state = await run_sync(engine.fetch_status)
    last = await run_sync(engine.states.get_last_run)

    text = format_status(state)
    if last.action:
        text += (
            f"\nLast run: {last.action}"
            f" ({last.phase.value if last.phase else '-'})"
        )
    structured = status_to_json(state)
    structured["last_run"] = last.model_dump(mode="json")

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent=structured,
    )


_HANDLERS = {
    "importer_run": (_handle_importer_run, IMPORT_RUN),
    "importer_resume": (_handle_importer_resume, IMPORT_RUN),
    "importer_cancel": (_handle_importer_cancel, IMPORT_RUN),
    "importer_status": (_handle_importer_status, IMPORT_VIEW),
}

IMPORTER_SPECS: list[ToolSpec] = [
    ToolSpec(
        tool=tool,
        permissions=frozenset({_HANDLERS[tool.name][1]}),
        handler=_HANDLERS[tool.name][0],
    )
    for tool in IMPORTER_TOOLS
]
