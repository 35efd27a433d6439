"""
Persisted agent state.

Public exports:
- Status, AgentStatus, MinionMessage (models)
- StatusStore (status table with change notification)
- MessageQueue (per-path FIFO for minions)
- LastMessageCache (process-local display cache)
- load_repository_paths (known repositories, read-only)
"""

from .models import Status, AgentStatus, LegacyAgentStatus, MinionMessage
from .store import StatusStore, parse_status_table
from .queue import MessageQueue, queue_key
from .cache import LastMessageCache
from .repositories import load_repository_paths

__all__ = [
    "Status",
    "AgentStatus",
    "LegacyAgentStatus",
    "MinionMessage",
    "StatusStore",
    "parse_status_table",
    "MessageQueue",
    "queue_key",
    "LastMessageCache",
    "load_repository_paths",
]
