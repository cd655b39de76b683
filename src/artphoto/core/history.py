"""Bounded, newest-first task history persisted as a single JSON array.

The ledger keeps at most ``capacity`` :class:`TaskRecord` entries (100 by
default) in reverse-chronological order.  It is deliberately forgiving on
read and best-effort on write:

- a missing, empty, unreadable or non-list file reads as an empty history
- malformed entries are skipped rather than failing the whole read
- read and write problems are logged and emitted as a
  :class:`~artphoto.core.errors.PersistenceWarning`; they never raise

Every read-modify-write goes through a lock shared by all ledgers pointing
at the same file, so concurrent submissions in one process cannot drop each
other's records.  Writes land in a temporary file that is then moved over
the ledger with :func:`os.replace`, so readers never observe a half-written
array.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import warnings
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from artphoto.core.errors import PersistenceWarning

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100


def _persistence_warning(message: str, *args: Any) -> None:
    """Log a ledger I/O problem and emit it as a :class:`PersistenceWarning`."""
    logger.warning(message, *args)
    warnings.warn(message % args, PersistenceWarning, stacklevel=3)


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TaskState(str, Enum):
    """Lifecycle of a remote generation task."""

    SUBMITTED = "submitted"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.DONE, TaskState.FAILED)


class TaskRecord(BaseModel):
    """One entry of the history ledger.

    Field names are persisted in camelCase so existing ``history.json`` files
    remain readable.

    Attributes:
        task_id: Identifier assigned by the remote API.
        original_image_urls: Caller-supplied image references, set at submit.
        generated_image_urls: Uploaded result URLs; empty until ``done``.
        state: Current :class:`TaskState`.
        prompt: Prompt the task was submitted with, when known.
        created_at: ISO-8601 creation time.
        updated_at: ISO-8601 time of the last state change.
    """

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(..., alias="taskId", min_length=1)
    original_image_urls: list[str] = Field(default_factory=list, alias="originalImageUrls")
    generated_image_urls: list[str] = Field(default_factory=list, alias="generatedImageUrls")
    state: TaskState = Field(default=TaskState.SUBMITTED)
    prompt: str | None = Field(default=None)
    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")
    updated_at: str = Field(default_factory=utc_now_iso, alias="updatedAt")

    @model_validator(mode="before")
    @classmethod
    def _infer_legacy_state(cls, data: Any) -> Any:
        # Entries written before ``state`` existed: generated URLs mean done.
        if isinstance(data, dict) and "state" not in data:
            generated = data.get("generatedImageUrls", data.get("generated_image_urls"))
            data = {**data, "state": TaskState.DONE if generated else TaskState.SUBMITTED}
        return data

    def to_json(self) -> dict:
        """Return the persisted (camelCase) representation."""
        return self.model_dump(mode="json", by_alias=True)


# One lock per ledger file, shared by every HistoryLedger instance in the
# process that points at it.
_LOCKS: dict[Path, threading.RLock] = {}
_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    key = path.resolve()
    with _LOCKS_GUARD:
        lock = _LOCKS.get(key)
        if lock is None:
            lock = _LOCKS[key] = threading.RLock()
        return lock


class HistoryLedger:
    """File-backed, capacity-bounded task history.

    Args:
        path: Location of the JSON array.  Parent directories are created on
            the first successful write.
        capacity: Maximum number of records kept.
    """

    def __init__(self, path: Path | str, capacity: int = DEFAULT_CAPACITY) -> None:
        self.path = Path(path)
        self.capacity = capacity
        self._lock = _lock_for(self.path)

    # -- Public interface ---------------------------------------------------

    def all(self) -> list[TaskRecord]:
        """Return every record, newest first."""
        with self._lock:
            return self._read()

    def find_by_id(self, task_id: str) -> TaskRecord | None:
        """Return the first record with *task_id*, or ``None`` if absent."""
        with self._lock:
            return next((record for record in self._read() if record.task_id == task_id), None)

    def append(self, record: TaskRecord) -> None:
        """Prepend *record* and drop the oldest entries beyond capacity."""
        with self._lock:
            records = self._read()
            records.insert(0, record)
            self._write(records[: self.capacity])
        logger.info("Recorded task %s (%s) in history.", record.task_id, record.state.value)

    def upsert(self, record: TaskRecord) -> None:
        """Replace the record with the same id in place, or append it.

        Args:
            record: Record to store.
        """
        with self._lock:
            records = self._read()
            for index, existing in enumerate(records):
                if existing.task_id == record.task_id:
                    records[index] = record
                    self._write(records)
                    break
            else:
                records.insert(0, record)
                self._write(records[: self.capacity])
        logger.info("Updated task %s (%s) in history.", record.task_id, record.state.value)

    # -- Storage helpers ----------------------------------------------------

    def _read(self) -> list[TaskRecord]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, encoding="utf-8") as handle:
                raw_entries = json.load(handle)
        except (OSError, ValueError) as exc:
            _persistence_warning("could not read history at %s (%s); treating as empty", self.path, exc)
            return []

        if not isinstance(raw_entries, list):
            _persistence_warning("history at %s is not a JSON array; treating as empty", self.path)
            return []

        records: list[TaskRecord] = []
        for entry in raw_entries:
            try:
                records.append(TaskRecord.model_validate(entry))
            except ValidationError:
                logger.debug("Skipping malformed history entry: %r", entry)
        return records

    def _write(self, records: list[TaskRecord]) -> None:
        payload = [record.to_json() for record in records]
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, ensure_ascii=False)
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as exc:
            _persistence_warning("could not write history to %s (%s)", self.path, exc)
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
