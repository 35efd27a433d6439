"""
Structured JSONL event log.

One line per notable event (hook transition, stop debounce, message
injection, watcher start/stop) in LOG_DIR/YYYY-MM-DD.jsonl. Diagnostics go
through the stdlib logger; this file is the audit trail a dashboard or a
human can grep after the fact.
"""

import json
import logging
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import default_config_dir

logger = logging.getLogger(__name__)

LOG_DIR = default_config_dir() / "logs"

# Run ID for this process
_run_id: str = str(uuid.uuid4())[:8]
_log_lock = threading.Lock()


def set_log_dir(log_dir: Path) -> None:
    """Point the event log at a different directory."""
    global LOG_DIR
    LOG_DIR = Path(log_dir)


def get_log_file() -> Path:
    """Get today's log file path."""
    return LOG_DIR / f"{datetime.now().strftime('%Y-%m-%d')}.jsonl"


def log_event(
    path: Optional[str],
    event: str,
    result: str = "ok",
    error: Optional[str] = None,
    extra: Optional[dict] = None,
) -> None:
    """Log an event to the JSONL log file."""
    entry = {
        "ts": datetime.now().isoformat(),
        "run_id": _run_id,
        "path": path,
        "event": event,
        "result": result,
        "error": error,
    }
    if extra:
        entry.update(extra)

    with _log_lock:
        try:
            LOG_DIR.mkdir(parents=True, exist_ok=True)
            with open(get_log_file(), "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.warning(f"Could not write event log: {e}")
