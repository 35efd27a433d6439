"""
Configuration management for agentdash.

Supports:
- Programmatic configuration via dataclasses
- YAML file loading (config.yaml inside the config directory)
- Environment variable overrides (.env files are honored)
- Sensible defaults for all settings
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Any, Dict, List
import os

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError

APP_NAME = "agentdash"
CONFIG_FILE_NAME = "config.yaml"

# Substrings that mark hook/tooling echoes rather than conversation.
DEFAULT_SYSTEM_OUTPUT_PATTERNS = [
    "Config directory:",
    "Updated agent status:",
    "completed successfully:",
    "[1m",  # ANSI bold
    "[/home/",
    "--hook",
    "Stop [",
    "___go_build_",
]


def default_config_dir() -> Path:
    """Resolve the config directory ($XDG_CONFIG_HOME/agentdash or ~/.config/agentdash)."""
    base = os.environ.get("XDG_CONFIG_HOME")
    if base:
        return Path(base) / APP_NAME
    return Path.home() / ".config" / APP_NAME


@dataclass
class HookConfig:
    """Configuration for the one-shot hook ingester."""

    stop_debounce_seconds: float = 10.0

    def __post_init__(self):
        if self.stop_debounce_seconds < 0:
            raise ConfigurationError("stop_debounce_seconds cannot be negative")


@dataclass
class TranscriptConfig:
    """Configuration for transcript discovery and parsing."""

    projects_root: Path = field(
        default_factory=lambda: Path.home() / ".claude" / "projects"
    )
    system_output_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_SYSTEM_OUTPUT_PATTERNS)
    )
    allow_patterns: List[str] = field(default_factory=list)
    display_limit: int = 200

    def __post_init__(self):
        if isinstance(self.projects_root, str):
            self.projects_root = Path(self.projects_root).expanduser()

        if self.display_limit <= 0:
            raise ConfigurationError("display_limit must be positive")


@dataclass
class MinionConfig:
    """Configuration for the minion supervisor."""

    poll_interval: float = 0.5
    keystroke_delay: float = 0.01
    shutdown_grace: float = 0.05

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ConfigurationError("poll_interval must be positive")
        if self.keystroke_delay < 0:
            raise ConfigurationError("keystroke_delay cannot be negative")
        if self.shutdown_grace < 0:
            raise ConfigurationError("shutdown_grace cannot be negative")


@dataclass
class WatcherConfig:
    """Configuration for the transcript watcher."""

    use_polling: bool = False  # Force the polling observer
    polling_interval: float = 1.0
    repositories: List[str] = field(default_factory=list)  # Extra known paths

    def __post_init__(self):
        if self.polling_interval <= 0:
            raise ConfigurationError("polling_interval must be positive")


@dataclass
class Config:
    """Master configuration for agentdash.

    Example usage:
        # Defaults + config.yaml + environment
        config = Config.load()

        # From file
        config = Config.from_yaml(Path("config.yaml"))

        # Programmatic
        config = Config(
            config_dir=tmp_path,
            minion=MinionConfig(poll_interval=0.1),
        )
    """

    config_dir: Path = field(default_factory=default_config_dir)
    hook: HookConfig = field(default_factory=HookConfig)
    transcript: TranscriptConfig = field(default_factory=TranscriptConfig)
    minion: MinionConfig = field(default_factory=MinionConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)

    def __post_init__(self):
        if isinstance(self.config_dir, str):
            self.config_dir = Path(self.config_dir).expanduser()

    @property
    def status_file(self) -> Path:
        return self.config_dir / "agent-status.json"

    @property
    def repositories_file(self) -> Path:
        return self.config_dir / "repositories.json"

    @property
    def messages_dir(self) -> Path:
        return self.config_dir / "minion-messages"

    @property
    def log_dir(self) -> Path:
        return self.config_dir / "logs"

    @classmethod
    def from_yaml(cls, path: Path, config_dir: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file
            config_dir: Config directory to use when the file does not set one

        Returns:
            Config instance

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file must contain a mapping: {path}")

        if config_dir is not None and "config_dir" not in data:
            data["config_dir"] = config_dir
        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        try:
            kwargs: Dict[str, Any] = {
                "hook": HookConfig(**data.get("hook", {})),
                "transcript": TranscriptConfig(**data.get("transcript", {})),
                "minion": MinionConfig(**data.get("minion", {})),
                "watcher": WatcherConfig(**data.get("watcher", {})),
            }
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration key: {e}")
        if data.get("config_dir"):
            kwargs["config_dir"] = Path(data["config_dir"]).expanduser()
        return cls(**kwargs)

    @classmethod
    def default(cls) -> "Config":
        """Create configuration with all defaults."""
        return cls()

    @classmethod
    def from_env(cls, base: Optional["Config"] = None) -> "Config":
        """Apply environment variable overrides.

        Supported environment variables:
        - AGENTDASH_CONFIG_DIR: Directory holding status, queue and logs
        - AGENTDASH_STOP_DEBOUNCE: Stop debounce window in seconds
        - AGENTDASH_PROJECTS_ROOT: Root of the per-project transcript directories
        - AGENTDASH_POLL_INTERVAL: Minion queue polling interval in seconds
        - AGENTDASH_KEYSTROKE_DELAY: Delay between injected characters in seconds
        - AGENTDASH_USE_POLLING: Force the polling file observer (true/false)
        """
        config = base or cls.default()

        try:
            if config_dir := os.environ.get("AGENTDASH_CONFIG_DIR"):
                config.config_dir = Path(config_dir).expanduser()
            if debounce := os.environ.get("AGENTDASH_STOP_DEBOUNCE"):
                config.hook = HookConfig(stop_debounce_seconds=float(debounce))
            if projects_root := os.environ.get("AGENTDASH_PROJECTS_ROOT"):
                config.transcript.projects_root = Path(projects_root).expanduser()
            if poll := os.environ.get("AGENTDASH_POLL_INTERVAL"):
                config.minion.poll_interval = float(poll)
            if delay := os.environ.get("AGENTDASH_KEYSTROKE_DELAY"):
                config.minion.keystroke_delay = float(delay)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment override: {e}")

        if use_polling := os.environ.get("AGENTDASH_USE_POLLING"):
            config.watcher.use_polling = use_polling.lower() == "true"

        # Re-run validation on the mutated sections
        config.minion.__post_init__()

        return config

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load the effective configuration.

        Order: defaults, then the YAML file (explicit path, or config.yaml
        inside the config directory when present), then environment.
        """
        load_dotenv()

        config_dir = Path(os.environ.get("AGENTDASH_CONFIG_DIR") or default_config_dir())
        if path is None and (config_dir / CONFIG_FILE_NAME).exists():
            path = config_dir / CONFIG_FILE_NAME

        base = cls.from_yaml(path, config_dir=config_dir) if path else cls(config_dir=config_dir)
        return cls.from_env(base)

    def ensure_dirs(self) -> None:
        """Create the config directory if missing."""
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary (for serialization)."""
        return {
            "config_dir": str(self.config_dir),
            "hook": {
                "stop_debounce_seconds": self.hook.stop_debounce_seconds,
            },
            "transcript": {
                "projects_root": str(self.transcript.projects_root),
                "system_output_patterns": list(self.transcript.system_output_patterns),
                "allow_patterns": list(self.transcript.allow_patterns),
                "display_limit": self.transcript.display_limit,
            },
            "minion": {
                "poll_interval": self.minion.poll_interval,
                "keystroke_delay": self.minion.keystroke_delay,
                "shutdown_grace": self.minion.shutdown_grace,
            },
            "watcher": {
                "use_polling": self.watcher.use_polling,
                "polling_interval": self.watcher.polling_interval,
                "repositories": list(self.watcher.repositories),
            },
        }

    def to_yaml(self) -> str:
        """Serialize config to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False)
