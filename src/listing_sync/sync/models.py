"""Pydantic models for the chunked listing sync engine.

Defines the core data contracts used across all sync modules:

- ``RunStatus``, ``InitMode``, ``Phase``, ``Outcome``: enums.
- ``RunState``: progress counters of the single logical run.
- ``LastRunRecord``: snapshot needed to resume an interrupted run.
- ``CachedPage``: one compressed remote response held by the page cache.
- ``MediaItem``, ``RemoteRecord``: listings as decoded from the API.
- ``AssetRef``, ``LocalEntity``: rows of the local entity store.
- ``Action`` (tagged union) with one model per action kind.
- ``PhaseParams``, ``Continuation``, ``PhaseResult``: engine I/O.

All models are frozen (immutable); state changes produce new values via
``model_copy(update=...)``.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    """Lifecycle status of the run, stored with its wire value."""

    FREE = "free"
    RUNNING = "running"
    FREE_CANCELED = "free:canceled"
    BUSY = "busy"
    ERROR = "error"

    @property
    def is_free(self) -> bool:
        return self.value.split(":")[0] == "free"


class InitMode(str, Enum):
    """How counters are initialized when a phase starts.

    ``HARD`` starts a fresh action, ``SOFT`` starts the next phase of the
    same action.  No mode at all means "resume from the last snapshot".
    """

    HARD = "hard"
    SOFT = "soft"


class Phase(str, Enum):
    """One step kind of an action."""

    DELETE_STALE = "delete_stale"
    IMPORT_CHANGED = "import_changed"
    IMPORT_SINGLE = "import_single"
    IMPORT_PAGES = "import_pages"
    IMPORT_IMAGES = "import_images"
    DELETE_ALL = "delete_all"
    CREATE_CACHE = "create_cache"
    DELETE_CACHE = "delete_cache"


class Outcome(str, Enum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    CANCELED = "canceled"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------


class RunState(BaseModel):
    """Progress of the single logical run.

    Attributes:
        status: Lifecycle status.
        method: Label of the step in progress, e.g. ``import/update``.
        timestamp: ISO 8601 UTC time of the last state change.
        processed: Records (or pages) handled so far in this phase.
        added: Records successfully created or updated.
        deleted: Records (or cache rows) removed.
        total: Records (or pages) the phase will handle, once known.
        page: 1-based page last fetched; 0 before the first fetch.
    """

    status: RunStatus = RunStatus.FREE
    method: str = ""
    timestamp: str | None = None
    processed: int = Field(default=0, ge=0)
    added: int = Field(default=0, ge=0)
    deleted: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    page: int = Field(default=0, ge=0)

    model_config = {"frozen": True}


class LastRunRecord(BaseModel):
    """Parameters and counters needed to resume an interrupted run.

    ``resume_page`` and ``resume_offset`` form the cursor of a paged
    phase: the page to request next and how many of its records were
    already applied.  A ``resume_page`` of 0 means the phase has not
    fetched anything yet.
    """

    action: str | None = None
    phase: Phase | None = None
    fetch_date: str | None = None
    listing_id: str | None = None
    page: int = 0
    processed: int = 0
    added: int = 0
    deleted: int = 0
    total: int = 0
    resume_page: int = 0
    resume_offset: int = 0

    model_config = {"frozen": True}


class CachedPage(BaseModel):
    """One compressed remote response.

    Attributes:
        cache_key: Deterministic key derived from the query.
        payload: zlib-compressed raw response body.
        last_updated: ISO 8601 UTC time the row was written.
    """

    cache_key: str
    payload: bytes
    last_updated: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Remote records
# ---------------------------------------------------------------------------


def as_list(value: Any) -> list:
    """Normalize an API collection that may be absent, bare or a list.

    Collections arrive either as ``{"ITEM": ...}`` wrappers or directly;
    a single child is a bare dict, several children are a list and an
    empty element is ``""``.
    """
    if isinstance(value, dict) and set(value) == {"ITEM"}:
        value = value["ITEM"]
    if value is None or value == "" or value == {}:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return " ".join(_text(v) for v in value if _text(v))
    return ""


_COLLECTION_KEYS = ("IMAGES", "TAGS", "AMENITIES", "SOCIALMEDIA")


class MediaItem(BaseModel):
    """One entry of a listing's ``IMAGES`` collection.

    ``media_file`` keeps the raw value; a non-string value (list or nested
    element) marks the item as unusable.
    """

    media_id: str = ""
    media_file: Any = None
    media_name: str = ""
    type_id: str = ""
    type_name: str = ""
    sort_order: int | None = None
    img_path: str = ""

    model_config = {"frozen": True}

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> "MediaItem":
        sort_raw = item.get("SORTORDER")
        try:
            sort_order = int(sort_raw) if sort_raw not in (None, "") else None
        except (TypeError, ValueError):
            sort_order = None
        media_file = item.get("MEDIAFILE")
        if isinstance(media_file, str):
            media_file = media_file.strip()
        return cls(
            media_id=_text(item.get("MEDIAID")),
            media_file=media_file,
            media_name=_text(item.get("MEDIANAME")),
            type_id=_text(item.get("TYPEID")),
            type_name=_text(item.get("TYPE")),
            sort_order=sort_order,
            img_path=_text(item.get("IMGPATH")),
        )

    @property
    def filename(self) -> str:
        """Basename of ``media_file`` or ``""`` when unusable."""
        if not isinstance(self.media_file, str) or not self.media_file:
            return ""
        return self.media_file.rsplit("/", 1)[-1]


class RemoteRecord(BaseModel):
    """One listing as decoded from the API.

    Attributes:
        external_id: ``LISTINGID``; empty when the source omitted it.
        name: ``COMPANY``, falling back to ``SORTCOMPANY``.
        attributes: Every scalar field of the listing (list-valued fields are
            joined with spaces).
        images: Declared media, in declaration order.
        tags: ``TAGS`` items.
        amenities: ``AMENITIES`` items.
        social: ``SOCIALMEDIA`` items.
        has_images: Whether the source sent an ``IMAGES`` element at all.
    """

    external_id: str = ""
    name: str = ""
    attributes: dict[str, str] = {}
    images: list[MediaItem] = []
    tags: list[dict[str, Any]] = []
    amenities: list[dict[str, Any]] = []
    social: list[dict[str, Any]] = []
    has_images: bool = False

    model_config = {"frozen": True}

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteRecord":
        attributes: dict[str, str] = {}
        for key, value in data.items():
            if key in _COLLECTION_KEYS:
                continue
            if isinstance(value, dict):
                continue
            if isinstance(value, list) and any(
                isinstance(v, dict) for v in value
            ):
                continue
            attributes[key] = _text(value)

        name = attributes.get("COMPANY") or attributes.get("SORTCOMPANY", "")
        return cls(
            external_id=attributes.get("LISTINGID", ""),
            name=name,
            attributes=attributes,
            images=[
                MediaItem.from_api(item)
                for item in as_list(data.get("IMAGES"))
                if isinstance(item, dict)
            ],
            tags=[t for t in as_list(data.get("TAGS")) if isinstance(t, dict)],
            amenities=[
                a for a in as_list(data.get("AMENITIES")) if isinstance(a, dict)
            ],
            social=[
                s for s in as_list(data.get("SOCIALMEDIA")) if isinstance(s, dict)
            ],
            has_images="IMAGES" in data,
        )

    @property
    def photo_file(self) -> str:
        return self.attributes.get("PHOTOFILE", "")

    @property
    def is_partial(self) -> bool:
        """True when the full listing must be fetched before applying.

        Change feeds carry only identifiers, and paged listings that
        declare a photo sometimes omit their image list.
        """
        if not self.external_id:
            return False
        if not self.name:
            return True
        return bool(self.photo_file) and not self.has_images


# ---------------------------------------------------------------------------
# Local store rows
# ---------------------------------------------------------------------------


class AssetRef(BaseModel):
    """A stored media file.

    Attributes:
        id: Store identity; stable across in-place updates.
        filename: Basename of the stored file.
        path: Absolute path of the stored file.
        content_type: Declared content type when stored.
        size: Byte length of the stored file.
        title: Human readable title.
        updated_at: ISO 8601 UTC time of the last write.
    """

    id: int
    filename: str
    path: str
    content_type: str | None = None
    size: int = 0
    title: str = ""
    updated_at: str | None = None

    model_config = {"frozen": True}


class LocalEntity(BaseModel):
    """A listing as stored locally."""

    id: int
    external_id: str
    title: str
    slug: str
    content: str = ""
    meta: dict[str, str] = {}
    terms: dict[str, list[str]] = {}

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Actions (tagged union)
# ---------------------------------------------------------------------------


class _ActionBase(BaseModel):
    phases: ClassVar[tuple[Phase, ...]] = ()

    model_config = {"frozen": True}


class ImportNew(_ActionBase):
    """Import listings created or changed since ``date``."""

    kind: Literal["import_new"] = "import_new"
    date: str | None = None
    phases: ClassVar[tuple[Phase, ...]] = (Phase.IMPORT_CHANGED,)


class SyncChanged(_ActionBase):
    """Delete listings invalidated since ``date``, then import changes."""

    kind: Literal["sync_changed"] = "sync_changed"
    date: str | None = None
    phases: ClassVar[tuple[Phase, ...]] = (
        Phase.DELETE_STALE,
        Phase.IMPORT_CHANGED,
    )


class ImportSingle(_ActionBase):
    kind: Literal["import_single"] = "import_single"
    listing_id: str | None = None
    phases: ClassVar[tuple[Phase, ...]] = (Phase.IMPORT_SINGLE,)


class ImportAll(_ActionBase):
    kind: Literal["import_all"] = "import_all"
    phases: ClassVar[tuple[Phase, ...]] = (Phase.IMPORT_PAGES,)


class ImportImages(_ActionBase):
    kind: Literal["import_images"] = "import_images"
    phases: ClassVar[tuple[Phase, ...]] = (Phase.IMPORT_IMAGES,)


class ResetAll(_ActionBase):
    kind: Literal["reset_all"] = "reset_all"
    phases: ClassVar[tuple[Phase, ...]] = (
        Phase.DELETE_ALL,
        Phase.IMPORT_PAGES,
    )


class DeleteAll(_ActionBase):
    kind: Literal["delete_all"] = "delete_all"
    phases: ClassVar[tuple[Phase, ...]] = (Phase.DELETE_ALL,)


class DeleteStale(_ActionBase):
    kind: Literal["delete_stale"] = "delete_stale"
    date: str | None = None
    phases: ClassVar[tuple[Phase, ...]] = (Phase.DELETE_STALE,)


class CreateCache(_ActionBase):
    kind: Literal["create_cache"] = "create_cache"
    phases: ClassVar[tuple[Phase, ...]] = (Phase.CREATE_CACHE,)


class DeleteCache(_ActionBase):
    kind: Literal["delete_cache"] = "delete_cache"
    phases: ClassVar[tuple[Phase, ...]] = (Phase.DELETE_CACHE,)


Action = Annotated[
    Union[
        ImportNew,
        SyncChanged,
        ImportSingle,
        ImportAll,
        ImportImages,
        ResetAll,
        DeleteAll,
        DeleteStale,
        CreateCache,
        DeleteCache,
    ],
    Field(discriminator="kind"),
]

_ACTION_ADAPTER: TypeAdapter = TypeAdapter(Action)

ACTION_KINDS: tuple[str, ...] = (
    "import_new",
    "sync_changed",
    "import_single",
    "import_all",
    "import_images",
    "reset_all",
    "delete_all",
    "delete_stale",
    "create_cache",
    "delete_cache",
)


def parse_action(
    kind: str, date: str | None = None, listing_id: str | None = None
) -> Action:
    """Decode an action name and its parameters into an ``Action``.

    Parameters an action kind does not carry are ignored.

    Raises:
        pydantic.ValidationError: If *kind* is unknown.
    """
    return _ACTION_ADAPTER.validate_python(
        {"kind": kind, "date": date, "listing_id": listing_id}
    )


# ---------------------------------------------------------------------------
# Engine I/O
# ---------------------------------------------------------------------------


class PhaseParams(BaseModel):
    """Optional parameters of one ``run_phase`` invocation."""

    init_mode: InitMode | None = None
    date: str | None = None
    listing_id: str | None = None
    page: int | None = Field(default=None, ge=1)
    phase: Phase | None = None

    model_config = {"frozen": True}


class Continuation(BaseModel):
    """Parameters the caller passes to the next ``run_phase`` call."""

    action: str
    phase: Phase
    init_mode: InitMode | None = None
    page: int | None = None
    date: str | None = None
    listing_id: str | None = None

    model_config = {"frozen": True}

    def to_params(self) -> PhaseParams:
        return PhaseParams(
            init_mode=self.init_mode,
            date=self.date,
            listing_id=self.listing_id,
            page=self.page,
            phase=self.phase,
        )


class PhaseResult(BaseModel):
    """Status object returned by every engine entrypoint."""

    status: RunStatus
    outcome: Outcome
    method: str = ""
    timestamp: str | None = None
    processed: int = 0
    added: int = 0
    deleted: int = 0
    page: int = 0
    total: int = 0
    message: str | None = None
    next: Continuation | None = None

    model_config = {"frozen": True}

    @classmethod
    def from_state(
        cls,
        state: RunState,
        outcome: Outcome,
        continuation: Continuation | None = None,
    ) -> "PhaseResult":
        return cls(
            status=state.status,
            outcome=outcome,
            method=state.method,
            timestamp=state.timestamp,
            processed=state.processed,
            added=state.added,
            deleted=state.deleted,
            page=state.page,
            total=state.total,
            next=continuation,
        )

    @classmethod
    def failure(cls, message: str) -> "PhaseResult":
        return cls(
            status=RunStatus.ERROR, outcome=Outcome.FAILED, message=message
        )

    @property
    def ok(self) -> bool:
        return self.outcome != Outcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        """Return the wire-format status object."""
        if self.outcome == Outcome.FAILED:
            return {"status": "error", "message": self.message or ""}
        result: dict[str, Any] = {
            "status": self.status.value,
            "method": self.method,
            "timestamp": self.timestamp,
            "processed": self.processed,
            "added": self.added,
            "deleted": self.deleted,
            "page": self.page,
            "total": self.total,
            "outcome": self.outcome.value,
        }
        if self.next is not None:
            result["next"] = self.next.model_dump(
                mode="json", exclude_none=True
            )
        return result
