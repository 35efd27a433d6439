"""
Parser for agent transcript files (newline-delimited JSON, append-only).

Every query re-opens the file and streams it once; there is no cursor
kept between calls. Malformed lines are skipped.

Entry shapes handled:
    {"type": "user", "timestamp": "...", "message": {"role": "user", "content": "text"}}
    {"type": "assistant", "message": {"role": "assistant",
        "content": [{"type": "text", "text": "..."}, {"type": "tool_use", ...}]}}
    {"type": "permission_request", "tool_name": "Bash"}
    {"type": "system", "content": "Stop [agentdash hook] completed successfully: ..."}
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..config import DEFAULT_SYSTEM_OUTPUT_PATTERNS
from ..exceptions import TranscriptUnreadable
from ..state.models import Status, parse_timestamp

logger = logging.getLogger(__name__)

TOOL_CALL_BLOCK = re.compile(r"<function_calls>.*?</function_calls>", re.DOTALL)
CONVERSATIONAL_ROLES = ("user", "assistant")


def escape_project_path(project_path: str) -> str:
    """Map an absolute project path to its transcript directory name.

    /home/user/dev/project -> -home-user-dev-project

    Lossy: paths already containing '-' can collide, so callers confirm a
    guess against known paths rather than inverting this.
    """
    return "-" + str(project_path).strip("/").replace("/", "-")


def clean_message_content(content: str) -> str:
    """Remove tool-call blocks and collapse the text onto one line."""
    content = TOOL_CALL_BLOCK.sub("", content)
    lines = [line.strip() for line in content.split("\n")]
    return " ".join(line for line in lines if line).strip()


def truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class SystemOutputFilter:
    """Decides whether text is hook/tooling noise rather than conversation.

    A text is system output when it contains any deny pattern and no allow
    pattern. Matching is case-insensitive substring search.
    """

    def __init__(
        self,
        deny: Optional[Iterable[str]] = None,
        allow: Optional[Iterable[str]] = None,
    ):
        self.deny = [p.lower() for p in (DEFAULT_SYSTEM_OUTPUT_PATTERNS if deny is None else deny)]
        self.allow = [p.lower() for p in (allow or [])]

    def is_system_output(self, content: str) -> bool:
        lowered = content.lower()
        if any(p in lowered for p in self.allow):
            return False
        return any(p in lowered for p in self.deny)


@dataclass
class TranscriptEntry:
    """One parsed transcript line."""

    type: str = ""
    role: str = "other"  # user, assistant, system, other
    content: str = ""
    timestamp: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_conversational(self) -> bool:
        return self.role in CONVERSATIONAL_ROLES and bool(self.content)

    @property
    def tool_request_name(self) -> Optional[str]:
        """Tool name if this entry is a tool-permission request."""
        if "permission" not in self.type and "tool_request" not in self.type:
            return None
        tool_name = self.raw.get("tool_name")
        message = self.raw.get("message")
        if not isinstance(tool_name, str) and isinstance(message, dict):
            tool_name = message.get("tool_name")
        return tool_name if isinstance(tool_name, str) and tool_name else None


@dataclass
class LastMessage:
    """The message a dashboard should show for a transcript."""

    content: str  # Full, cleaned
    display: str  # Truncated for display
    role: Optional[str] = None
    timestamp: Optional[datetime] = None
    is_tool_call: bool = False
    tool_name: Optional[str] = None
    tool_action: Optional[str] = None


@dataclass
class Activity:
    """The newest entry with any content, whatever its role."""

    content: str
    is_system_output: bool


@dataclass
class TranscriptInfo:
    """A discovered transcript file for a project."""

    path: Path
    session_id: str


def _extract_content(message: Dict[str, Any], role: str) -> str:
    """Flatten message content: user text is a string, assistant text is typed blocks."""
    content = message.get("content")
    if role == "user":
        return content if isinstance(content, str) else ""
    if role == "assistant" and isinstance(content, list):
        parts = [
            block["text"]
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        return " ".join(parts)
    if isinstance(content, str):
        return content
    return ""


def parse_line(line: str) -> Optional[TranscriptEntry]:
    """Parse one transcript line, or None if it is blank or malformed."""
    line = line.strip()
    if not line:
        return None
    try:
        raw = json.loads(line)
    except ValueError:
        return None
    if not isinstance(raw, dict):
        return None

    entry = TranscriptEntry(raw=raw)
    if isinstance(raw.get("type"), str):
        entry.type = raw["type"]
    entry.timestamp = parse_timestamp(raw.get("timestamp"))

    message = raw.get("message")
    if isinstance(message, dict) and isinstance(message.get("role"), str):
        role = message["role"]
        entry.role = role if role in ("user", "assistant", "system") else "other"
        entry.content = _extract_content(message, role)
    elif isinstance(raw.get("content"), str):
        # Bare entries (hook echoes, system notices)
        entry.role = "system" if entry.type == "system" else "other"
        entry.content = raw["content"]
    return entry


class TranscriptParser:
    """Stateless queries over transcript files."""

    def __init__(
        self,
        projects_root: Optional[Path] = None,
        output_filter: Optional[SystemOutputFilter] = None,
        display_limit: int = 200,
    ):
        self.projects_root = Path(projects_root) if projects_root else Path.home() / ".claude" / "projects"
        self.filter = output_filter or SystemOutputFilter()
        self.display_limit = display_limit

    @classmethod
    def from_config(cls, config) -> "TranscriptParser":
        return cls(
            projects_root=config.transcript.projects_root,
            output_filter=SystemOutputFilter(
                deny=config.transcript.system_output_patterns,
                allow=config.transcript.allow_patterns,
            ),
            display_limit=config.transcript.display_limit,
        )

    def iter_entries(self, transcript_path) -> Iterator[TranscriptEntry]:
        """Stream entries from the start of the file.

        Raises:
            TranscriptUnreadable: If the file cannot be opened
        """
        try:
            fh = open(transcript_path, encoding="utf-8", errors="replace")
        except OSError as e:
            raise TranscriptUnreadable(f"Cannot open transcript {transcript_path}: {e}")

        with fh:
            for line in fh:
                entry = parse_line(line)
                if entry is not None:
                    yield entry

    def is_system_output(self, content: str) -> bool:
        return self.filter.is_system_output(content)

    def _qualifying_text(self, entry: TranscriptEntry) -> Optional[str]:
        """Cleaned content if the entry counts as conversation, else None."""
        if not entry.is_conversational:
            return None
        cleaned = clean_message_content(entry.content)
        if not cleaned or self.is_system_output(cleaned):
            return None
        return cleaned

    def last_message(self, transcript_path) -> Optional[LastMessage]:
        """The message to display: newest assistant text, else newest user text.

        A tool-permission request newer than every qualifying message is
        reported instead, flagged with is_tool_call.

        Raises:
            TranscriptUnreadable: If the file cannot be opened
        """
        return self.latest_messages(transcript_path)[0]

    def newest_message(self, transcript_path) -> Optional[LastMessage]:
        """The newest qualifying message whatever its role.

        Raises:
            TranscriptUnreadable: If the file cannot be opened
        """
        return self.latest_messages(transcript_path)[1]

    def latest_messages(self, transcript_path) -> Tuple[Optional[LastMessage], Optional[LastMessage]]:
        """One pass over the transcript returning (display message, newest message).

        A pending tool-permission request is returned in both positions.

        Raises:
            TranscriptUnreadable: If the file cannot be opened
        """
        last_user: Optional[TranscriptEntry] = None
        last_assistant: Optional[TranscriptEntry] = None
        newest: Optional[TranscriptEntry] = None
        user_text = assistant_text = newest_text = ""
        pending_tool: Optional[str] = None

        for entry in self.iter_entries(transcript_path):
            tool_name = entry.tool_request_name
            if tool_name:
                pending_tool = tool_name
                continue

            cleaned = self._qualifying_text(entry)
            if cleaned is None:
                continue
            pending_tool = None
            newest, newest_text = entry, cleaned
            if entry.role == "assistant":
                last_assistant, assistant_text = entry, cleaned
            else:
                last_user, user_text = entry, cleaned

        if pending_tool:
            action = f"Use {pending_tool} tool"
            tool_message = LastMessage(
                content=f"Permission requested to use {pending_tool} tool",
                display=f"Tool permission requested: {action}",
                role="assistant",
                is_tool_call=True,
                tool_name=pending_tool,
                tool_action=action,
            )
            return tool_message, tool_message

        chosen, text = (last_assistant, assistant_text) if last_assistant else (last_user, user_text)
        return self._to_message(chosen, text), self._to_message(newest, newest_text)

    def _to_message(self, entry: Optional[TranscriptEntry], text: str) -> Optional[LastMessage]:
        if entry is None:
            return None
        return LastMessage(
            content=text,
            display=truncate(text, self.display_limit),
            role=entry.role,
            timestamp=entry.timestamp,
        )

    def last_entry(self, transcript_path) -> Optional[TranscriptEntry]:
        """The final parsable entry of the file."""
        last = None
        for entry in self.iter_entries(transcript_path):
            last = entry
        return last

    def is_waiting_for_user(self, transcript_path) -> bool:
        """True when the transcript ends on assistant output.

        Unreadable or empty transcripts count as not waiting.
        """
        try:
            entry = self.last_entry(transcript_path)
        except TranscriptUnreadable:
            return False
        if entry is None:
            return False
        return entry.type == "assistant" or entry.role == "assistant"

    def most_recent_activity(self, transcript_path) -> Optional[Activity]:
        """The newest entry with content, including system entries.

        Raises:
            TranscriptUnreadable: If the file cannot be opened
        """
        latest = None
        for entry in self.iter_entries(transcript_path):
            if entry.content:
                latest = entry.content
        if latest is None:
            return None
        return Activity(content=latest, is_system_output=self.is_system_output(latest))

    def determine_session_status(self, transcript_path) -> Status:
        """waiting when the newest activity is system output or absent, else running.

        Raises:
            TranscriptUnreadable: If the file cannot be opened
        """
        activity = self.most_recent_activity(transcript_path)
        if activity is None or activity.is_system_output:
            return Status.WAITING
        return Status.RUNNING

    def transcript_dir_for(self, project_path: str) -> Path:
        return self.projects_root / escape_project_path(project_path)

    def find_most_recent_transcript(self, project_path: str) -> Optional[TranscriptInfo]:
        """Newest *.jsonl in the project's transcript directory, if any."""
        project_dir = self.transcript_dir_for(project_path)
        newest: Optional[Path] = None
        newest_mtime = -1.0
        for candidate in project_dir.glob("*.jsonl"):
            try:
                mtime = candidate.stat().st_mtime
            except OSError:
                continue  # Vanished between glob and stat
            if mtime > newest_mtime:
                newest, newest_mtime = candidate, mtime

        if newest is None:
            return None
        return TranscriptInfo(path=newest, session_id=newest.stem)

    def project_for_transcript(self, transcript_path, candidates: List[str]) -> Optional[str]:
        """Guess which candidate project owns a transcript by re-escaping each one."""
        dir_name = Path(transcript_path).parent.name
        for candidate in candidates:
            if escape_project_path(candidate) == dir_name:
                return candidate
        return None
