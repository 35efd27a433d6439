"""
Data models for persisted agent state.

- AgentStatus: one row of the status table, keyed by filesystem path
- MinionMessage: one pending message in a per-path queue
"""

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Status(str, Enum):
    """Inferred state of an agent working in one directory."""

    UNKNOWN = "unknown"
    RUNNING = "running"  # Tools in flight or a turn in progress
    WAITING = "waiting"  # Presented output, likely awaiting input
    IDLE = "idle"  # Turn finished
    PAUSED = "paused"
    ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 / ISO 8601 timestamp into an aware datetime.

    Naive values are assumed to be UTC. Returns None for anything unparsable.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_timestamp(value: datetime) -> str:
    return value.isoformat()


@dataclass
class AgentStatus:
    """Status row for one monitored path (a checkout or worktree).

    The last message text is deliberately not a field: it lives in the
    process-local LastMessageCache.
    """

    path: str
    status: Status = Status.UNKNOWN
    last_activity: datetime = None
    pid: Optional[int] = None
    session_id: Optional[str] = None
    transcript_path: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.status, Status):
            try:
                self.status = Status(self.status)
            except ValueError:
                self.status = Status.UNKNOWN
        if self.last_activity is None:
            self.last_activity = utcnow()
        elif not isinstance(self.last_activity, datetime):
            self.last_activity = parse_timestamp(self.last_activity) or utcnow()
        self.session_id = self.session_id or None
        self.transcript_path = self.transcript_path or None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentStatus":
        """Strict deserialization: unknown keys raise TypeError."""
        if not isinstance(data, dict):
            raise TypeError(f"status row must be an object, got {type(data).__name__}")
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "path": self.path,
            "status": self.status.value,
            "last_activity": format_timestamp(self.last_activity),
        }
        # omitempty, matching the on-disk layout other tools already read
        if self.pid:
            data["pid"] = self.pid
        if self.session_id:
            data["session_id"] = self.session_id
        if self.transcript_path:
            data["transcript_path"] = self.transcript_path
        return data

    def seconds_since_activity(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.last_activity).total_seconds()


@dataclass
class LegacyAgentStatus(AgentStatus):
    """Superseded row layout that persisted the last message alongside status."""

    last_message: Optional[str] = None
    full_last_message: Optional[str] = None

    def project(self) -> AgentStatus:
        """Drop the legacy-only fields."""
        current = {f.name for f in fields(AgentStatus)}
        return AgentStatus(**{k: getattr(self, k) for k in current})


@dataclass
class MinionMessage:
    """A message waiting to be typed into a minion's input."""

    id: str
    path: str
    message: str
    timestamp: datetime = None

    def __post_init__(self):
        if not isinstance(self.timestamp, datetime):
            self.timestamp = parse_timestamp(self.timestamp) or utcnow()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MinionMessage":
        return cls(
            id=data["id"],
            path=data["path"],
            message=data["message"],
            timestamp=data.get("timestamp"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
        }
