"""
Hook ingester: one process per agent hook event.

The agent tool runs `agentdash hook` at lifecycle points (before/after a
tool call, on notification, on stop) with a JSON payload on stdin:

    {"session_id": "...", "transcript_path": "...",
     "tool_name": "Bash", "tool_input": {...}, "tool_output": {...}}

The payload shape, plus a peek at the transcript when the shape is
ambiguous, decides the event; the event decides the status row for the
working directory.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .claude.transcript import TranscriptParser
from .eventlog import log_event
from .exceptions import MalformedHookPayload, TranscriptUnreadable
from .state.cache import LastMessageCache
from .state.models import AgentStatus, Status, utcnow
from .state.store import StatusStore

logger = logging.getLogger(__name__)


class HookEvent(Enum):
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    NOTIFICATION = "Notification"
    STOP = "Stop"


EVENT_STATUS = {
    HookEvent.PRE_TOOL_USE: Status.RUNNING,
    HookEvent.POST_TOOL_USE: Status.RUNNING,
    HookEvent.NOTIFICATION: Status.WAITING,
    HookEvent.STOP: Status.IDLE,
}

# Statuses a late Stop must not clobber inside the debounce window
DEBOUNCED_STATUSES = (Status.RUNNING, Status.WAITING)


@dataclass
class HookPayload:
    """Parsed hook stdin."""

    session_id: str = ""
    transcript_path: str = ""
    tool_name: str = ""
    tool_input: Any = None
    tool_output: Any = None

    @property
    def has_session(self) -> bool:
        return bool(self.session_id and self.transcript_path)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HookPayload":
        def text(key: str) -> str:
            value = data.get(key)
            return value if isinstance(value, str) else ""

        return cls(
            session_id=text("session_id"),
            transcript_path=text("transcript_path"),
            tool_name=text("tool_name"),
            tool_input=data.get("tool_input"),
            tool_output=data.get("tool_output"),
        )


def parse_payload(raw: str) -> HookPayload:
    """Parse hook stdin.

    Raises:
        MalformedHookPayload: If the input is empty, not JSON, or not an object
    """
    if not raw or not raw.strip():
        raise MalformedHookPayload("No hook payload on stdin")
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise MalformedHookPayload(f"Hook payload is not JSON: {e}")
    if not isinstance(data, dict):
        raise MalformedHookPayload(f"Hook payload must be an object, got {type(data).__name__}")
    return HookPayload.from_dict(data)


def classify_event(payload: HookPayload, parser: TranscriptParser) -> HookEvent:
    """Infer the hook event from the payload shape."""
    if payload.tool_input is not None:
        return HookEvent.PRE_TOOL_USE
    if payload.tool_output is not None:
        return HookEvent.POST_TOOL_USE
    if payload.tool_name:
        return HookEvent.POST_TOOL_USE
    if payload.has_session and parser.is_waiting_for_user(payload.transcript_path):
        return HookEvent.NOTIFICATION
    return HookEvent.STOP


def status_for_event(event: Optional[HookEvent]) -> Status:
    return EVENT_STATUS.get(event, Status.UNKNOWN)


def should_ignore_stop(
    existing: Optional[AgentStatus],
    window_seconds: float,
    now: Optional[datetime] = None,
) -> bool:
    """True if a Stop arrived too soon after a running/waiting update.

    Stops are sometimes delivered right after the Notification of the same
    turn; honoring them would flash the agent to idle.
    """
    if existing is None or existing.status not in DEBOUNCED_STATUSES:
        return False
    return existing.seconds_since_activity(now) < window_seconds


class HookIngester:
    """Applies one hook payload to the status table."""

    def __init__(
        self,
        store: StatusStore,
        parser: TranscriptParser,
        cache: Optional[LastMessageCache] = None,
        stop_debounce_seconds: float = 10.0,
    ):
        self.store = store
        self.parser = parser
        self.cache = cache or LastMessageCache()
        self.stop_debounce_seconds = stop_debounce_seconds

    def ingest(
        self,
        payload: HookPayload,
        working_dir: Optional[str] = None,
        pid: Optional[int] = None,
    ) -> AgentStatus:
        """Classify the payload, upsert the row for `working_dir`, refresh the cache.

        Raises:
            StoreError: If the status table cannot be written
        """
        working_dir = working_dir or os.getcwd()
        event = classify_event(payload, self.parser)
        status = status_for_event(event)
        result: Dict[str, AgentStatus] = {}

        def upsert(rows: List[AgentStatus]) -> bool:
            now = utcnow()
            existing = next((r for r in rows if r.path == working_dir), None)

            new_status = status
            if event is HookEvent.STOP and should_ignore_stop(
                existing, self.stop_debounce_seconds, now
            ):
                new_status = existing.status
                logger.info(f"Ignoring Stop for {working_dir}: {existing.status.value} updated recently")
                log_event(working_dir, "stop_debounced", extra={"kept": existing.status.value})

            row = AgentStatus(
                path=working_dir,
                status=new_status,
                last_activity=now,
                pid=pid,
                session_id=payload.session_id or (existing.session_id if existing else None),
                transcript_path=payload.transcript_path or (existing.transcript_path if existing else None),
            )
            if existing is not None:
                rows[rows.index(existing)] = row
            else:
                rows.append(row)
            result["row"] = row
            return True

        rows = self.store.update(upsert)
        row = result["row"]
        logger.info(f"Updated agent status: {working_dir} -> {row.status.value} ({event.value})")
        log_event(
            working_dir,
            "hook",
            extra={
                "hook_event": event.value,
                "status": row.status.value,
                "session_id": row.session_id,
                "rows": len(rows),
            },
        )

        if payload.has_session:
            self._refresh_last_message(working_dir, payload.transcript_path)
        return row

    def _refresh_last_message(self, working_dir: str, transcript_path: str) -> None:
        try:
            message = self.parser.last_message(transcript_path)
        except TranscriptUnreadable as e:
            logger.warning(f"{e}; last message not refreshed")
            return
        if message is not None:
            self.cache.update(working_dir, message.display, message.content)


def run_hook(raw: str, ingester: HookIngester, working_dir: Optional[str] = None) -> AgentStatus:
    """Parse stdin text and ingest it. Errors propagate to the CLI, which exits 1."""
    payload = parse_payload(raw)
    logger.debug(
        f"Hook payload - session: {payload.session_id!r}, transcript: {payload.transcript_path!r}, "
        f"tool: {payload.tool_name!r}, input: {payload.tool_input is not None}, "
        f"output: {payload.tool_output is not None}"
    )
    return ingester.ingest(payload, working_dir=working_dir, pid=os.getppid())
