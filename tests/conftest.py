"""Shared fixtures for agentdash tests."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from unittest.mock import patch

from agentdash.claude.transcript import TranscriptParser, escape_project_path
from agentdash.config import Config
from agentdash.state.queue import MessageQueue
from agentdash.state.store import StatusStore


@pytest.fixture(autouse=True)
def event_log_dir(tmp_path):
    """Keep the JSONL event log inside the test's tmp dir."""
    log_dir = tmp_path / "event-logs"
    with patch("agentdash.eventlog.LOG_DIR", log_dir):
        yield log_dir


@pytest.fixture
def config(tmp_path):
    """Config rooted entirely in tmp_path."""
    cfg = Config(config_dir=tmp_path / "config")
    cfg.transcript.projects_root = tmp_path / "projects"
    cfg.ensure_dirs()
    return cfg


@pytest.fixture
def store(config):
    return StatusStore(config.status_file)


@pytest.fixture
def message_queue(config):
    return MessageQueue(config.messages_dir)


@pytest.fixture
def parser(config):
    return TranscriptParser.from_config(config)


def ts(seconds: int) -> str:
    """RFC 3339 timestamp a fixed number of seconds into 2025-01-01."""
    return datetime.fromtimestamp(1735689600 + seconds, tz=timezone.utc).isoformat()


def user_entry(text: str, seconds: int = 0) -> dict:
    return {"type": "user", "timestamp": ts(seconds), "message": {"role": "user", "content": text}}


def assistant_entry(text: str, seconds: int = 0) -> dict:
    return {
        "type": "assistant",
        "timestamp": ts(seconds),
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }


def system_entry(text: str) -> dict:
    return {"type": "system", "content": text}


class TranscriptWriter:
    """Writes JSONL transcripts into the fake projects root."""

    def __init__(self, projects_root: Path):
        self.projects_root = projects_root

    def path_for(self, project_path: str, session_id: str) -> Path:
        return self.projects_root / escape_project_path(project_path) / f"{session_id}.jsonl"

    def write(self, project_path: str, session_id: str, entries, raw_lines=()) -> Path:
        path = self.path_for(project_path, session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(e) for e in entries] + list(raw_lines)
        path.write_text("\n".join(lines) + "\n")
        return path

    def append(self, path: Path, entry: dict) -> None:
        with open(path, "a") as f:
            f.write(json.dumps(entry) + "\n")


@pytest.fixture
def transcripts(config):
    return TranscriptWriter(config.transcript.projects_root)
