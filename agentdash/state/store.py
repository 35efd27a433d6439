"""
Durable status table with change notification.

The table is a pretty-printed JSON array in <config_dir>/agent-status.json.
Every mutation is a whole-file read-modify-write:

    store = StatusStore(config.status_file)
    store.subscribe(lambda rows: print(len(rows), "rows"))

    def mark_running(rows):
        for row in rows:
            if row.path == "/repo":
                row.status = Status.RUNNING
                return True
        return False

    store.update(mark_running)

Writers in one process serialize on a threading lock; one-shot hook
processes serialize on an advisory flock of a sibling .lock file.
"""

import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from ..exceptions import StoreCorrupt, StoreError
from .models import AgentStatus, LegacyAgentStatus

logger = logging.getLogger(__name__)

StatusCallback = Callable[[List[AgentStatus]], None]
Mutator = Callable[[List[AgentStatus]], Optional[bool]]


def _parse_rows(text: str, row_type=AgentStatus) -> List[AgentStatus]:
    """Strictly parse the table text. Raises ValueError/TypeError/KeyError on mismatch."""
    data = json.loads(text)
    if data is None:
        return []
    if not isinstance(data, list):
        raise TypeError("status table must be a JSON array")
    return [row_type.from_dict(item) for item in data]


def _strip_duplicate_bracket(text: str) -> Optional[str]:
    """Undo the `]]` artifact left by an interrupted concurrent write."""
    stripped = text.rstrip()
    if stripped.endswith("]]"):
        return stripped[:-1]
    return None


def parse_status_table(text: str) -> List[AgentStatus]:
    """Parse the status table, repairing the known corruption shapes.

    Order: strict parse; strip a duplicated trailing bracket and retry;
    parse the superseded schema and project it down.

    Raises:
        StoreCorrupt: If no strategy succeeds
    """
    if not text.strip():
        return []

    try:
        return _parse_rows(text)
    except (ValueError, TypeError, KeyError) as e:
        first_error = e

    candidates = [text]
    repaired = _strip_duplicate_bracket(text)
    if repaired is not None:
        try:
            rows = _parse_rows(repaired)
            logger.warning("Recovered status table by stripping a duplicated trailing bracket")
            return rows
        except (ValueError, TypeError, KeyError):
            candidates.insert(0, repaired)

    for candidate in candidates:
        try:
            legacy = _parse_rows(candidate, row_type=LegacyAgentStatus)
        except (ValueError, TypeError, KeyError):
            continue
        logger.warning("Recovered status table from the legacy row layout")
        return [row.project() for row in legacy]

    raise StoreCorrupt(f"Unrecoverable status table: {first_error}")


class StatusStore:
    """Per-path agent status table backed by one JSON file."""

    def __init__(self, status_file: Path):
        self.status_file = Path(status_file)
        self._lock = threading.RLock()
        self._subscribers: List[StatusCallback] = []
        self._subscribers_lock = threading.Lock()

    @property
    def lock_file(self) -> Path:
        return self.status_file.with_name(self.status_file.name + ".lock")

    # --- Subscription ---

    def subscribe(self, callback: StatusCallback) -> None:
        """Register a callback invoked with the saved rows after every save."""
        with self._subscribers_lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: StatusCallback) -> None:
        with self._subscribers_lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def _notify(self, rows: List[AgentStatus]) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(list(rows))
            except Exception as e:
                logger.error(f"Status subscriber {callback!r} failed: {e}")

    # --- Persistence ---

    def load(self, recover: bool = True) -> List[AgentStatus]:
        """Load every row.

        Args:
            recover: When True (default), an unrecoverable table is logged
                and treated as empty. When False, StoreCorrupt is raised.

        Raises:
            StoreCorrupt: Only when recover is False
            StoreError: If the file exists but cannot be read
        """
        with self._lock:
            try:
                text = self.status_file.read_text()
            except FileNotFoundError:
                return []
            except OSError as e:
                raise StoreError(f"Could not read {self.status_file}: {e}")

        try:
            return parse_status_table(text)
        except StoreCorrupt as e:
            if not recover:
                raise
            logger.error(f"{e}; resetting to an empty table")
            return []

    def save(self, rows: List[AgentStatus]) -> None:
        """Write every row atomically, then notify subscribers.

        Raises:
            StoreError: If the file cannot be written
        """
        with self._lock:
            try:
                with self._file_lock():
                    self._write(rows)
            except OSError as e:
                raise StoreError(f"Could not save {self.status_file}: {e}")
        self._notify(rows)

    def _write(self, rows: List[AgentStatus]) -> None:
        data = json.dumps([row.to_dict() for row in rows], indent=2)
        self.status_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self.status_file.with_suffix(".tmp")
        tmp_file.write_text(data)
        os.replace(tmp_file, self.status_file)

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_file, "a") as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)

    def update(self, mutator: Mutator) -> List[AgentStatus]:
        """Read-modify-write the whole table.

        The mutator edits the row list in place. Returning False means
        "nothing changed": the file is left alone and nobody is notified.

        Returns:
            The rows after the mutation
        """
        with self._lock:
            try:
                with self._file_lock():
                    rows = self.load()
                    changed = mutator(rows)
                    if changed is False:
                        return rows
                    self._write(rows)
            except OSError as e:
                raise StoreError(f"Could not update {self.status_file}: {e}")
        self._notify(rows)
        return rows

    def get(self, path: str) -> Optional[AgentStatus]:
        for row in self.load():
            if row.path == path:
                return row
        return None
