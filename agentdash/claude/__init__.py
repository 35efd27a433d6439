"""Transcript parsing for the external agent tool."""

from .transcript import (
    Activity,
    LastMessage,
    SystemOutputFilter,
    TranscriptEntry,
    TranscriptInfo,
    TranscriptParser,
    clean_message_content,
    escape_project_path,
    parse_line,
)

__all__ = [
    "Activity",
    "LastMessage",
    "SystemOutputFilter",
    "TranscriptEntry",
    "TranscriptInfo",
    "TranscriptParser",
    "clean_message_content",
    "escape_project_path",
    "parse_line",
]
