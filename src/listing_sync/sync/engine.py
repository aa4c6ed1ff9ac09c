"""Resumable, chunked sync engine.

``SyncEngine`` runs one *step* of an action per ``run_phase()`` call:

1. Decodes the action name and its parameters into an ``Action``.
2. Runs preflight: the entity type must be available and no other run
   may hold the run state (status must be ``free`` or ``free:canceled``).
3. Initializes counters (``hard`` fresh start, ``soft`` next phase of the
   same action, no mode = resume from the last-run snapshot) and writes
   the snapshot.
4. Fetches one chunk through the page cache and applies its records,
   checking for cancellation before the fetch and before every record.
5. Writes the snapshot again, releases the run state and returns a
   ``PhaseResult`` carrying the ``Continuation`` for the next call.

The engine never loops across remote fetches; the caller re-invokes it
with the returned continuation until the outcome is ``complete``.

Error handling: preflight and parameter problems return an error result
without touching the run state; fetch failures release the run with its
counters untouched; per-record failures are logged and skipped; any other
exception marks the run ``error`` and propagates.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import ValidationError

from ..config import Config
from ..core.client import FetchError, ListingClient
from .applier import RecordApplier
from .assets import AssetReconciler
from .cache import PageCache
from .context import RunContext
from .fetcher import ListingFetcher
from .models import (
    Action,
    Continuation,
    InitMode,
    LastRunRecord,
    Outcome,
    Phase,
    PhaseParams,
    PhaseResult,
    RunState,
    RunStatus,
    parse_action,
)
from .state import RunStateStore, SettingsStore, utc_now
from .store import EntityStore, SqliteEntityStore

logger = logging.getLogger(__name__)

ERR_PREFLIGHT = "Process failed preflight checks"
ERR_NO_ID = "No or invalid listing ID given"
ERR_NO_DATE = "No or invalid date given"
ERR_EMPTY = "No or empty result returned"

IMPORT_WINDOW = timedelta(days=2)
STALE_WINDOW = timedelta(weeks=1)

DATE_PHASES = (Phase.IMPORT_CHANGED, Phase.DELETE_STALE)
PAGE_PHASES = (Phase.IMPORT_PAGES, Phase.IMPORT_IMAGES, Phase.CREATE_CACHE)

# Labels reported as ``RunState.method``
METHOD_IMPORT_FETCH = "import/fetch"
METHOD_IMPORT_UPDATE = "import/update"
METHOD_IMPORT_IMAGES = "import/update_images"
METHOD_DELETE_FETCH = "delete/fetch"
METHOD_DELETE_PRUNE = "delete/prune"
METHOD_DELETE_PURGE = "delete/purge"
METHOD_DELETE_META = "delete/meta"
METHOD_CACHE_CREATE = "cache/create"
METHOD_CACHE_DELETE = "cache/delete"


class PreflightError(Exception):
    """The run state or the entity store does not allow a phase to start."""


class ActionError(Exception):
    """An action name or its parameters are missing or invalid."""


class _Canceled(Exception):
    """Raised internally when a cancellation request is observed."""


@dataclass
class _Run:
    """Mutable bookkeeping for one ``run_phase`` invocation."""

    action: Action
    phase: Phase
    params: PhaseParams
    fetch_date: str | None
    listing_id: str | None
    state: RunState
    previous: LastRunRecord
    ctx: RunContext
    finished: bool = False
    resume_page: int = 0
    resume_offset: int = 0

    def log_context(self) -> dict[str, Any]:
        return {
            "action": self.action.kind,
            "phase": self.phase.value,
            "page": self.state.page,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_date(value: str | None) -> str | None:
    """Normalize ``YYYY-MM-DD`` (optionally with a time part) or return None."""
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value.strip()[:10], "%Y-%m-%d").date().isoformat()
    except ValueError:
        return None


def calculate_start_date(
    explicit: str | None,
    last_run: str | None,
    interval: timedelta,
    now: datetime,
) -> str | None:
    """Return the start of the date window for a fresh run.

    An explicit date wins (``None`` if it is invalid).  Otherwise the
    earlier of the last run's timestamp and ``now - interval`` is used,
    so a window never skips changes made since the previous run.
    """
    if explicit:
        return parse_date(explicit)

    default = (now - interval).date()
    if last_run:
        try:
            last = datetime.fromisoformat(last_run).date()
        except ValueError:
            last = default
        if last < default:
            return last.isoformat()
    return default.isoformat()


def _valid_listing_id(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value if value.isdigit() and int(value) > 0 else None


class SyncEngine:
    """Run resumable, chunked sync actions one step at a time.

    Args:
        states: Run state store.
        fetcher: Cache-through remote fetcher.
        store: Local entity store.
        applier: Record applier.
        reconciler: Asset reconciler.
        cache: Page cache (purged by the ``delete_cache`` action).
        stale_after: A ``running`` state without progress for this long
            is reported as ``busy``.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        states: RunStateStore,
        fetcher: ListingFetcher,
        store: EntityStore,
        applier: RecordApplier,
        reconciler: AssetReconciler,
        cache: PageCache,
        stale_after: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.states = states
        self.fetcher = fetcher
        self.store = store
        self.applier = applier
        self.reconciler = reconciler
        self.cache = cache
        self.stale_after = stale_after
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: Config,
        client: ListingClient | None = None,
    ) -> "SyncEngine":
        """Wire up an engine with SQLite storage under ``config.data_dir``."""
        client = client or ListingClient(config)
        cache = PageCache(config.cache_path)
        store = SqliteEntityStore(
            config.store_path, config.media_dir, config.entity_type
        )
        fetcher = ListingFetcher(client, cache, config.chunk_size)
        reconciler = AssetReconciler(store, client, config.image_base_url)
        applier = RecordApplier(store, fetcher, reconciler)
        states = RunStateStore(SettingsStore(config.state_dir))
        return cls(
            states=states,
            fetcher=fetcher,
            store=store,
            applier=applier,
            reconciler=reconciler,
            cache=cache,
            stale_after=timedelta(minutes=config.stale_after_minutes),
        )

    @property
    def chunk_size(self) -> int:
        return self.fetcher.page_size

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_phase(
        self,
        action_name: str,
        params: PhaseParams | dict[str, Any] | None = None,
    ) -> PhaseResult:
        """Run one step of *action_name*.

        Args:
            action_name: One of ``models.ACTION_KINDS``.
            params: ``init_mode``, ``date``, ``listing_id``, ``page`` and
                ``phase``; all optional.

        Returns:
            The status after this step.  ``outcome`` tells the caller
            whether to invoke again with ``next``.

        Raises:
            Exception: Anything unexpected, after the run state has been
                set to ``error``.
        """
        try:
            run = self._prepare(action_name, params)
        except (ActionError, PreflightError) as e:
            logger.warning("%s", e)
            return PhaseResult.failure(str(e))

        before = run.state
        try:
            run.state = self._start(run)
            self._execute(run)
        except _Canceled:
            return self._handle_cancel(run)
        except FetchError as e:
            page = run.state.page
            logger.error(
                "%s failed at page #%d: %s",
                run.phase.value,
                page,
                e,
                extra=run.log_context(),
            )
            self.states.set_last_run(run.previous)
            self.states.save(
                before.model_copy(update={"timestamp": utc_now()})
            )
            return PhaseResult.failure(
                f"In {run.phase.value} at page #{page}: {ERR_EMPTY} ({e})"
            )
        except Exception:
            logger.exception(
                "Unexpected failure in %s/%s", run.action.kind, run.phase.value
            )
            self._snapshot(run)
            self.states.save(
                run.state.model_copy(
                    update={"status": RunStatus.ERROR, "timestamp": utc_now()}
                )
            )
            raise

        return self._finish(run)

    def resume(self) -> PhaseResult:
        """Re-run the action recorded in the last-run snapshot."""
        last = self.states.get_last_run()
        if not last.action:
            return PhaseResult.failure("No previous run to resume")
        logger.info(
            "Resuming %s (%s) at page %d, %d processed",
            last.action,
            last.phase.value if last.phase else "-",
            last.page,
            last.processed,
        )
        return self.run_phase(
            last.action,
            PhaseParams(
                date=last.fetch_date,
                listing_id=last.listing_id,
                phase=last.phase,
            ),
        )

    def cancel(self, force: bool = False) -> PhaseResult:
        """Request cancellation of the running phase.

        Idempotent when nothing runs.  With *force*, or when the run is in
        ``error`` or has stalled, the run state is moved to
        ``free:canceled`` directly so a crashed run can be resumed.
        """
        state = self.states.load()
        if state.status.is_free:
            self.states.clear_cancel()
            return PhaseResult.from_state(state, Outcome.COMPLETE)

        if force or state.status == RunStatus.ERROR or self._is_stale(state):
            last = self.states.get_last_run()
            self.states.set_last_run(
                last.model_copy(
                    update={
                        "page": state.page,
                        "processed": state.processed,
                        "added": state.added,
                        "deleted": state.deleted,
                        "total": state.total,
                    }
                )
            )
            canceled = self.states.save(
                state.model_copy(
                    update={
                        "status": RunStatus.FREE_CANCELED,
                        "timestamp": utc_now(),
                    }
                )
            )
            self.states.clear_cancel()
            logger.info("Run state forced to free:canceled")
            return PhaseResult.from_state(canceled, Outcome.CANCELED)

        self.states.request_cancel()
        logger.info("Cancellation requested")
        return PhaseResult.from_state(state, Outcome.CANCELED)

    def fetch_status(self) -> RunState:
        """Current run state; a stalled ``running`` state reads as ``busy``."""
        state = self.states.load()
        if state.status == RunStatus.RUNNING and self._is_stale(state):
            return state.model_copy(update={"status": RunStatus.BUSY})
        return state

    # ------------------------------------------------------------------
    # Preflight / postflight
    # ------------------------------------------------------------------

    def _prepare(
        self,
        action_name: str,
        params: PhaseParams | dict[str, Any] | None,
    ) -> _Run:
        """Validate the request and run preflight; mutates nothing."""
        if params is None:
            params = PhaseParams()
        elif isinstance(params, dict):
            try:
                params = PhaseParams.model_validate(params)
            except ValidationError as e:
                raise ActionError(f"Invalid parameters: {e}") from e

        try:
            action = parse_action(action_name, params.date, params.listing_id)
        except ValidationError as e:
            raise ActionError(f"Unknown action '{action_name}'") from e

        phase = params.phase or action.phases[0]
        if phase not in action.phases:
            raise ActionError(
                f"Phase '{phase.value}' is not part of action '{action.kind}'"
            )

        if not self.store.entity_type_available():
            raise PreflightError(f"While running {action.kind}: {ERR_PREFLIGHT}")
        state = self.states.load()
        if not state.status.is_free:
            raise PreflightError(f"While running {action.kind}: {ERR_PREFLIGHT}")

        fetch_date = None
        if phase in DATE_PHASES:
            if params.init_mode == InitMode.HARD:
                interval = (
                    STALE_WINDOW
                    if action.kind == "delete_stale"
                    else IMPORT_WINDOW
                )
                fetch_date = calculate_start_date(
                    params.date, state.timestamp, interval, self._clock()
                )
            else:
                fetch_date = parse_date(params.date)
            if fetch_date is None:
                raise ActionError(f"While running {action.kind}: {ERR_NO_DATE}")

        listing_id = None
        if phase == Phase.IMPORT_SINGLE:
            listing_id = _valid_listing_id(params.listing_id)
            if listing_id is None:
                raise ActionError(f"While running {action.kind}: {ERR_NO_ID}")

        return _Run(
            action=action,
            phase=phase,
            params=params,
            fetch_date=fetch_date,
            listing_id=listing_id,
            state=state,
            previous=self.states.get_last_run(),
            ctx=RunContext(self.store),
        )

    def _start(self, run: _Run) -> RunState:
        """Move to ``running`` with initialized counters and snapshot."""
        self.states.clear_cancel()
        last = run.previous
        init_mode = run.params.init_mode
        if init_mode is None and last.action != run.action.kind:
            # Nothing of this action to resume
            init_mode = InitMode.HARD

        match init_mode:
            case InitMode.HARD:
                counters = dict(processed=0, added=0, deleted=0, total=0, page=0)
            case InitMode.SOFT:
                counters = dict(
                    processed=0,
                    added=last.added,
                    deleted=last.deleted,
                    total=0,
                    page=0,
                )
            case _:
                counters = dict(
                    processed=last.processed,
                    added=last.added,
                    deleted=last.deleted,
                    total=last.total,
                    page=last.page,
                )
                if last.phase == run.phase:
                    run.resume_page = last.resume_page
                    run.resume_offset = last.resume_offset

        state = self.states.save(
            RunState(
                status=RunStatus.RUNNING,
                method=run.state.method,
                timestamp=utc_now(),
                **counters,
            )
        )
        run.state = state
        self._snapshot(run)
        logger.info(
            "Started %s/%s (init=%s)",
            run.action.kind,
            run.phase.value,
            init_mode.value if init_mode else "resume",
            extra=run.log_context(),
        )
        return state

    def _finish(self, run: _Run) -> PhaseResult:
        self._snapshot(run)
        state = self.states.save(
            run.state.model_copy(
                update={"status": RunStatus.FREE, "timestamp": utc_now()}
            )
        )

        if not run.finished:
            return PhaseResult.from_state(
                state, Outcome.CONTINUE, self._continuation(run, state)
            )

        phases = run.action.phases
        index = phases.index(run.phase)
        if index + 1 < len(phases):
            next_phase = phases[index + 1]
            return PhaseResult.from_state(
                state,
                Outcome.CONTINUE,
                Continuation(
                    action=run.action.kind,
                    phase=next_phase,
                    init_mode=InitMode.SOFT,
                    date=run.fetch_date,
                    listing_id=run.listing_id,
                ),
            )

        logger.info(
            "Completed %s: processed=%d added=%d deleted=%d",
            run.action.kind,
            state.processed,
            state.added,
            state.deleted,
            extra=run.log_context(),
        )
        return PhaseResult.from_state(state, Outcome.COMPLETE)

    def _handle_cancel(self, run: _Run) -> PhaseResult:
        self._snapshot(run)
        state = self.states.save(
            run.state.model_copy(
                update={
                    "status": RunStatus.FREE_CANCELED,
                    "timestamp": utc_now(),
                }
            )
        )
        self.states.clear_cancel()
        logger.info(
            "Canceled %s/%s after %d processed",
            run.action.kind,
            run.phase.value,
            state.processed,
            extra=run.log_context(),
        )
        return PhaseResult.from_state(
            state, Outcome.CANCELED, self._continuation(run, state)
        )

    def _continuation(self, run: _Run, state: RunState) -> Continuation:
        """Parameters that resume *run* exactly where *state* stopped."""
        page = None
        if run.phase in (Phase.IMPORT_PAGES, Phase.IMPORT_IMAGES):
            page = run.resume_page or 1
        elif run.phase == Phase.CREATE_CACHE:
            page = state.page + 1
        return Continuation(
            action=run.action.kind,
            phase=run.phase,
            page=page,
            date=run.fetch_date,
            listing_id=run.listing_id,
        )

    def _snapshot(self, run: _Run) -> None:
        state = run.state
        self.states.set_last_run(
            LastRunRecord(
                action=run.action.kind,
                phase=run.phase,
                fetch_date=run.fetch_date,
                listing_id=run.listing_id,
                page=state.page,
                processed=state.processed,
                added=state.added,
                deleted=state.deleted,
                total=state.total,
                resume_page=run.resume_page,
                resume_offset=run.resume_offset,
            )
        )

    # ------------------------------------------------------------------
    # Progress helpers
    # ------------------------------------------------------------------

    def _advance(self, run: _Run, **changes: Any) -> None:
        changes["timestamp"] = utc_now()
        run.state = self.states.save(run.state.model_copy(update=changes))

    def _check_cancel(self) -> None:
        if self.states.cancel_requested():
            raise _Canceled()

    def _is_stale(self, state: RunState) -> bool:
        if not state.timestamp:
            return False
        try:
            stamp = datetime.fromisoformat(state.timestamp)
        except ValueError:
            return False
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return self._clock() - stamp > self.stale_after

    def _page_cursor(self, run: _Run) -> tuple[int, int | None]:
        """Page to fetch and how many of its records are already applied.

        Without an explicit page the run continues at its cursor.  An
        explicit page behind the cursor was fully applied by this run and
        is replayed without counting (``None``); one ahead of it starts
        fresh.
        """
        resume_page = run.resume_page or 1
        page = run.params.page or resume_page
        if page < resume_page:
            return page, None
        if page == resume_page:
            return page, run.resume_offset
        return page, 0

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _execute(self, run: _Run) -> None:
        match run.phase:
            case Phase.IMPORT_PAGES:
                self._run_pages(run, images_only=False)
            case Phase.IMPORT_IMAGES:
                self._run_pages(run, images_only=True)
            case Phase.IMPORT_CHANGED:
                self._run_changed(run)
            case Phase.IMPORT_SINGLE:
                self._run_single(run)
            case Phase.DELETE_STALE:
                self._run_delete_stale(run)
            case Phase.DELETE_ALL:
                self._run_delete_all(run)
            case Phase.CREATE_CACHE:
                self._run_create_cache(run)
            case Phase.DELETE_CACHE:
                self._run_delete_cache(run)

    def _run_pages(self, run: _Run, images_only: bool) -> None:
        page, skip = self._page_cursor(run)
        replay = skip is None
        if not replay:
            run.resume_page, run.resume_offset = page, skip

        self._check_cancel()
        self._advance(run, method=METHOD_IMPORT_FETCH, page=page)
        batch = self.fetcher.fetch_page(page)
        self._advance(
            run,
            total=max(batch.total, run.state.processed),
            method=METHOD_IMPORT_IMAGES if images_only else METHOD_IMPORT_UPDATE,
        )

        if replay:
            skip = len(batch.records)
        for offset, record in enumerate(batch.records[skip:], start=skip + 1):
            self._check_cancel()
            if images_only:
                ok = self.applier.apply_images(record, run.ctx)
            else:
                ok = self.applier.apply(record, run.ctx)
            run.resume_offset = offset
            self._advance(
                run,
                processed=run.state.processed + 1,
                added=run.state.added + (1 if ok else 0),
            )
            # Keeps the cursor in step with the counters for a forced cancel
            self._snapshot(run)

        # A short page is fully applied all the same
        if not replay:
            run.resume_page, run.resume_offset = page + 1, 0
        state = run.state
        run.finished = (
            state.processed >= state.total
            or page * self.chunk_size >= state.total
            or not batch.records
        )

    def _run_changed(self, run: _Run) -> None:
        self._check_cancel()
        self._advance(run, method=METHOD_IMPORT_FETCH, page=run.state.page + 1)
        batch = self.fetcher.fetch_changed(run.fetch_date)
        self._advance(
            run,
            total=max(batch.total, run.state.processed),
            method=METHOD_IMPORT_UPDATE,
        )

        start = run.state.processed
        chunk = batch.records[start : start + self.chunk_size]
        for record in chunk:
            self._check_cancel()
            ok = self.applier.apply(record, run.ctx)
            self._advance(
                run,
                processed=run.state.processed + 1,
                added=run.state.added + (1 if ok else 0),
            )

        run.finished = run.state.processed >= run.state.total or not chunk

    def _run_single(self, run: _Run) -> None:
        self._check_cancel()
        self._advance(run, method=METHOD_IMPORT_UPDATE, total=1, page=1)
        record = self.fetcher.fetch_listing(run.listing_id)

        self._check_cancel()
        ok = self.applier.apply(record, run.ctx)
        self._advance(run, processed=1, added=1 if ok else 0)
        run.finished = True

    def _run_delete_stale(self, run: _Run) -> None:
        self._check_cancel()
        self._advance(run, method=METHOD_DELETE_FETCH, page=run.state.page + 1)
        batch = self.fetcher.fetch_invalid(run.fetch_date)
        self._advance(
            run,
            total=max(batch.total, run.state.processed),
            method=METHOD_DELETE_PRUNE,
        )

        start = run.state.processed
        chunk = batch.records[start : start + self.chunk_size]
        for record in chunk:
            self._check_cancel()
            removed = self._delete_listing(record.external_id, run.ctx)
            self._advance(
                run,
                processed=run.state.processed + 1,
                deleted=run.state.deleted + removed,
            )

        run.finished = run.state.processed >= run.state.total or not chunk
        self._housekeeping(run)

    def _run_delete_all(self, run: _Run) -> None:
        self._check_cancel()
        self._advance(run, method=METHOD_DELETE_FETCH, page=run.state.page + 1)
        entities = self.store.list_entities(self.chunk_size)

        self._advance(
            run,
            method=METHOD_DELETE_PURGE,
            total=self.store.count_entities() + run.state.processed,
        )
        for entity in entities:
            self._check_cancel()
            removed = 0
            try:
                assets = self.store.entity_assets(entity.id)
                if self.store.delete_entity(entity.id):
                    removed = 1
                    run.ctx.forget(entity.external_id)
                self.reconciler.delete_unreferenced(assets)
            except Exception:
                logger.exception("Failed to delete entity %d", entity.id)
            self._advance(
                run,
                processed=run.state.processed + 1,
                deleted=run.state.deleted + removed,
            )

        run.finished = self.store.count_entities() == 0
        self._housekeeping(run)

    def _run_create_cache(self, run: _Run) -> None:
        page = run.params.page or run.state.page + 1

        self._check_cancel()
        self._advance(run, method=METHOD_CACHE_CREATE)
        batch = self.fetcher.fetch_page(page)
        total_pages = math.ceil(batch.total / self.chunk_size)
        self._advance(
            run, processed=page, added=page, page=page, total=max(total_pages, page)
        )
        run.finished = page >= total_pages

    def _run_delete_cache(self, run: _Run) -> None:
        self._check_cancel()
        count = self.cache.count()
        self._advance(
            run, method=METHOD_CACHE_DELETE, processed=count, total=count, page=1
        )
        removed = self.cache.purge_all()
        self._advance(run, deleted=removed)
        run.finished = True

    # ------------------------------------------------------------------
    # Deletion helpers
    # ------------------------------------------------------------------

    def _delete_listing(self, external_id: str, ctx: RunContext) -> int:
        """Delete every entity of *external_id* (duplicates included)."""
        if not external_id:
            logger.warning("Invalid listing without id, nothing to delete")
            return 0
        removed = 0
        try:
            for entity_id in self.store.find_by_external_id(external_id):
                assets = self.store.entity_assets(entity_id)
                if self.store.delete_entity(entity_id):
                    removed += 1
                self.reconciler.delete_unreferenced(assets)
            ctx.forget(external_id)
        except Exception:
            logger.exception("Failed to delete listing %s", external_id)
        return removed

    def _housekeeping(self, run: _Run) -> None:
        self._advance(run, method=METHOD_DELETE_META)
        self.store.prune_empty_terms()
