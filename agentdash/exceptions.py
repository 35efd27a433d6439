"""
Exception hierarchy for agentdash.

All exceptions inherit from AgentDashError for easy catching.
"""


class AgentDashError(Exception):
    """Base exception for agentdash.

    All other exceptions in this module inherit from this,
    allowing callers to catch any agentdash error with a single except.
    """
    pass


class ConfigurationError(AgentDashError):
    """Error in configuration.

    Raised when:
    - Config file is not valid YAML
    - A value fails validation (e.g., negative poll interval)
    - An environment override cannot be parsed
    """
    pass


class StoreError(AgentDashError):
    """Error reading or writing a state file (status table, message queue).

    Raised when:
    - The file exists but cannot be read
    - The temp file cannot be written or renamed into place
    """
    pass


class StoreCorrupt(StoreError):
    """The status table could not be deserialized, even after repair.

    Only surfaces when recovery is disabled; the default load path
    logs it and returns an empty table instead.
    """
    pass


class TranscriptUnreadable(AgentDashError):
    """A transcript file could not be opened.

    Treated as "no transcript" by callers. Never fatal to the watcher.
    """
    pass


class MalformedHookPayload(AgentDashError):
    """Hook stdin was empty, not JSON, or not a JSON object.

    Fatal to the one-shot hook process (exit 1).
    """
    pass


class ChildProcessFailure(AgentDashError):
    """The supervised child process could not be started.

    A child that starts and exits non-zero is NOT this error;
    its exit code is propagated as the supervisor's own.
    """
    pass


class InjectionAfterExit(AgentDashError):
    """A message injection was attempted after the child exited.

    The polling loop drops the message and logs it; it is not retried.
    """
    pass
