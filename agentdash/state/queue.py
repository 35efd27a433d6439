"""
Durable per-path FIFO of messages for minions.

Each target directory gets its own JSON array file under
<config_dir>/minion-messages/. The dashboard enqueues; the minion
supervisor running in that directory pops. The file disappears when its
queue drains.
"""

import fcntl
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from ..exceptions import StoreError
from .models import MinionMessage, utcnow

logger = logging.getLogger(__name__)


def queue_key(path: str) -> str:
    """Map a directory path to a safe file-name component."""
    safe_name = path.replace("/", "_").replace("\\", "_").replace(":", "_")
    return safe_name or "root"


class MessageQueue:
    """Per-path message queue stored as one JSON file per path."""

    def __init__(self, messages_dir: Path):
        self.messages_dir = Path(messages_dir)
        self._lock = threading.Lock()

    def file_for(self, path: str) -> Path:
        return self.messages_dir / f"messages_{queue_key(path)}.json"

    @contextmanager
    def _locked(self, path: str) -> Iterator[Path]:
        """Hold the in-process lock and the directory's advisory lock."""
        message_file = self.file_for(path)
        with self._lock:
            self.messages_dir.mkdir(parents=True, exist_ok=True)
            with open(self.messages_dir / ".queue.lock", "a") as fh:
                fcntl.flock(fh, fcntl.LOCK_EX)
                try:
                    yield message_file
                finally:
                    fcntl.flock(fh, fcntl.LOCK_UN)

    def _read(self, message_file: Path) -> List[MinionMessage]:
        try:
            text = message_file.read_text()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StoreError(f"Could not read {message_file}: {e}")

        try:
            data = json.loads(text) if text.strip() else []
            return [MinionMessage.from_dict(item) for item in data]
        except (ValueError, TypeError, KeyError) as e:
            raise StoreError(f"Could not parse {message_file}: {e}")

    def _write(self, message_file: Path, messages: List[MinionMessage]) -> None:
        data = json.dumps([m.to_dict() for m in messages], indent=2)
        try:
            tmp_file = message_file.with_suffix(".tmp")
            tmp_file.write_text(data)
            os.replace(tmp_file, message_file)
        except OSError as e:
            raise StoreError(f"Could not write {message_file}: {e}")

    def enqueue(self, path: str, text: str) -> MinionMessage:
        """Append a message for the minion running in `path`."""
        message = MinionMessage(
            id=f"msg_{time.time_ns()}",
            path=path,
            message=text,
            timestamp=utcnow(),
        )
        with self._locked(path) as message_file:
            messages = self._read(message_file)
            messages.append(message)
            self._write(message_file, messages)
        logger.debug(f"Queued {message.id} for {path}")
        return message

    def peek_all(self, path: str) -> List[MinionMessage]:
        """Return every pending message for `path`, oldest first, without removing any."""
        with self._locked(path) as message_file:
            return self._read(message_file)

    def pop(self, path: str) -> Optional[MinionMessage]:
        """Remove and return the oldest message for `path`, or None."""
        with self._locked(path) as message_file:
            messages = self._read(message_file)
            if not messages:
                return None

            message, remaining = messages[0], messages[1:]
            if remaining:
                self._write(message_file, remaining)
            else:
                self._remove(message_file)
        logger.debug(f"Popped {message.id} for {path}")
        return message

    def clear(self, path: str) -> None:
        """Drop every pending message for `path`."""
        with self._locked(path) as message_file:
            self._remove(message_file)

    def _remove(self, message_file: Path) -> None:
        try:
            message_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StoreError(f"Could not remove {message_file}: {e}")
