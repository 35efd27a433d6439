"""Process-local cache of the last message seen for each path."""

import threading
from typing import Dict, Optional, Tuple


class LastMessageCache:
    """path -> (truncated, full) last message text.

    Rebuilt from transcripts on every change and lost on restart; it is a
    display aid, never a source of truth.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._messages: Dict[str, Tuple[str, str]] = {}

    def update(self, path: str, truncated: str, full: str) -> None:
        with self._lock:
            self._messages[path] = (truncated, full)

    def get(self, path: str) -> Optional[Tuple[str, str]]:
        with self._lock:
            return self._messages.get(path)

    def discard(self, path: str) -> None:
        with self._lock:
            self._messages.pop(path, None)

    def snapshot(self) -> Dict[str, Tuple[str, str]]:
        with self._lock:
            return dict(self._messages)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)
