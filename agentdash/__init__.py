"""
agentdash - out-of-band status tracking and input injection for coding agents.

This package provides:
- Hook ingestion (one process per agent hook event)
- Transcript parsing and watching (status inference without an RPC channel)
- A durable status table with change notification
- A per-directory message queue drained by the minion supervisor

CLI usage:
    agentdash hook < payload.json
    agentdash minion -- claude
    agentdash send /path/to/repo "run the tests"
"""

__version__ = "0.1.0"

from .config import Config, HookConfig, TranscriptConfig, MinionConfig, WatcherConfig
from .exceptions import (
    AgentDashError,
    ConfigurationError,
    StoreError,
    StoreCorrupt,
    TranscriptUnreadable,
    MalformedHookPayload,
    ChildProcessFailure,
    InjectionAfterExit,
)

__all__ = [
    "__version__",
    "Config",
    "HookConfig",
    "TranscriptConfig",
    "MinionConfig",
    "WatcherConfig",
    "AgentDashError",
    "ConfigurationError",
    "StoreError",
    "StoreCorrupt",
    "TranscriptUnreadable",
    "MalformedHookPayload",
    "ChildProcessFailure",
    "InjectionAfterExit",
]
