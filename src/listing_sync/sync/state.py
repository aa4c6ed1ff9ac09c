"""Run state persistence layer.

Keeps the progress of the single logical run in a small key/value
settings area: one JSON file per key inside the state directory
(``<data_dir>/state/``).

Key design choices:

* **Atomic writes** -- ``SettingsStore.write()`` writes to a temp file then
  calls ``os.replace()`` so readers never see partial data.
* **No read caching** -- every ``read()`` goes to disk, so a value written
  by another thread or process (e.g. a cancel request) is seen by the
  next check.
* **Separate cancel key** -- cancellation requests live under their own
  key and never share a file with the counters, so a cancel issued while
  a phase is writing counters cannot be lost.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import LastRunRecord, RunState, RunStatus

logger = logging.getLogger(__name__)

RUN_STATE_KEY = "run_state"
LAST_RUN_KEY = "last_run"
CANCEL_KEY = "cancel_request"

_KEY_PATTERN = re.compile(r"^[a-z0-9_]+$")


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string (seconds precision)."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class SettingsStore:
    """Durable key/value area backed by one JSON file per key.

    Args:
        state_dir: Directory holding the settings files.  Created on
            first write.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)

    def read(self, key: str, default: Any = None) -> Any:
        """Return the value stored under *key*, or *default*.

        An unreadable file is logged and treated as absent.
        """
        path = self._path(key)
        if not path.exists():
            return default
        try:
            with open(path, encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable setting %s: %s", key, e)
            return default

    def write(self, key: str, value: Any) -> None:
        """Persist *value* under *key* atomically."""
        self._state_dir.mkdir(parents=True, exist_ok=True)

        target = self._path(key)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(value, fh, indent=2)
            os.replace(tmp_path, target)
        except BaseException:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def delete(self, key: str) -> None:
        """Remove *key*.  No-op if not present."""
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid settings key: {key!r}")
        return self._state_dir / f"{key}.json"


class RunStateStore:
    """Typed access to ``RunState``, ``LastRunRecord`` and the cancel flag.

    ``RunState`` values are immutable; ``set()`` loads the current value,
    replaces one field and saves the new value as a whole.
    """

    def __init__(self, settings: SettingsStore) -> None:
        self._settings = settings

    # ------------------------------------------------------------------
    # Run state
    # ------------------------------------------------------------------

    def load(self) -> RunState:
        """Return the persisted ``RunState``, creating defaults on first use."""
        raw = self._settings.read(RUN_STATE_KEY)
        if raw is None:
            state = RunState()
            self.save(state)
            return state
        return RunState.model_validate(raw)

    def save(self, state: RunState) -> RunState:
        self._settings.write(RUN_STATE_KEY, state.model_dump(mode="json"))
        return state

    def get(self, field: str) -> Any:
        """Return one ``RunState`` field."""
        if field not in RunState.model_fields:
            raise KeyError(field)
        return getattr(self.load(), field)

    def set(self, field: str, value: Any) -> RunState:
        """Replace one ``RunState`` field and persist the new state."""
        if field not in RunState.model_fields:
            raise KeyError(field)
        state = self.load()
        updated = RunState.model_validate(
            {**state.model_dump(), field: value}
        )
        return self.save(updated)

    def update(self, **changes: Any) -> RunState:
        """Replace several fields at once and persist the new state."""
        state = self.load()
        updated = RunState.model_validate({**state.model_dump(), **changes})
        return self.save(updated)

    def set_status(self, status: RunStatus, method: str | None = None) -> RunState:
        changes: dict[str, Any] = {"status": status, "timestamp": utc_now()}
        if method is not None:
            changes["method"] = method
        return self.update(**changes)

    # ------------------------------------------------------------------
    # Last run snapshot
    # ------------------------------------------------------------------

    def get_last_run(self) -> LastRunRecord:
        raw = self._settings.read(LAST_RUN_KEY)
        if raw is None:
            return LastRunRecord()
        return LastRunRecord.model_validate(raw)

    def set_last_run(self, record: LastRunRecord) -> None:
        self._settings.write(LAST_RUN_KEY, record.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Cancellation flag
    # ------------------------------------------------------------------

    def request_cancel(self) -> None:
        self._settings.write(CANCEL_KEY, {"requested_at": utc_now()})

    def cancel_requested(self) -> bool:
        return self._settings.read(CANCEL_KEY) is not None

    def clear_cancel(self) -> None:
        self._settings.delete(CANCEL_KEY)
