"""Resumable, chunked listing sync engine.

Public API for mirroring listings of a remote directory service into a
local entity store, one bounded chunk per call.

Architecture
------------
Every action is broken into phases, and every phase into steps that each
fetch at most one remote page.  Progress lives in a durable run state so
an interrupted run resumes from the last completed record instead of the
start.  Remote responses are kept in a page cache keyed by the day they
were fetched, so a resumed step re-reads the same data.

Modules:

- ``engine``    -- ``SyncEngine``: preflight, phase dispatch, postflight.
- ``driver``    -- ``drive``: re-invoke the engine with its continuations.
- ``state``     -- ``SettingsStore``, ``RunStateStore``: durable run state.
- ``cache``     -- ``PageCache``: compressed remote responses in SQLite.
- ``fetcher``   -- ``ListingFetcher``: cache-through remote reads.
- ``store``     -- ``SqliteEntityStore``: entities, meta, terms, assets.
- ``applier``   -- ``RecordApplier``: one listing onto one entity.
- ``assets``    -- ``AssetReconciler``: declared media vs stored assets.
- ``mapper``    -- Pure field mapping helpers.
- ``context``   -- ``RunContext``: per-invocation id map and media dedupe.
- ``models``    -- Pydantic data contracts.
- ``reporter``  -- Human-readable and JSON status formatting.

Usage example
-------------
::

    from listing_sync.config import load_config
    from listing_sync.sync import SyncEngine, drive, format_status

    engine = SyncEngine.from_config(load_config())
    result = drive(engine, "import_all")
    print(format_status(result))
"""

from .driver import drive
from .engine import ActionError, PreflightError, SyncEngine
from .models import (
    ACTION_KINDS,
    Continuation,
    InitMode,
    Outcome,
    Phase,
    PhaseParams,
    PhaseResult,
    RunState,
    RunStatus,
)
from .reporter import format_progress, format_status, status_to_json

__all__ = [
    "ACTION_KINDS",
    "ActionError",
    "Continuation",
    "InitMode",
    "Outcome",
    "Phase",
    "PhaseParams",
    "PhaseResult",
    "PreflightError",
    "RunState",
    "RunStatus",
    "SyncEngine",
    "drive",
    "format_progress",
    "format_status",
    "status_to_json",
]
