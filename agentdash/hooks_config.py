"""
Install the agentdash hook into a repository's agent settings.

Writes `<repo>/.claude/settings.local.json` so every PreToolUse,
PostToolUse, Stop and Notification event runs `agentdash hook`, and keeps
`.claude/` out of version control. Existing settings keys are preserved;
only `hooks` is replaced.
"""

import json
import logging
import shutil
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .config import APP_NAME
from .eventlog import log_event
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

HOOK_EVENTS = ("PreToolUse", "PostToolUse", "Stop", "Notification")
SETTINGS_DIR = ".claude"
SETTINGS_FILE = "settings.local.json"
GITIGNORE_ENTRY = ".claude/"


@dataclass
class HookInstallStatus:
    path: str
    is_installed: bool
    config_path: str
    has_gitignore: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def hook_command(executable: Optional[str] = None) -> str:
    """Command line the agent tool should run, preferring an absolute path."""
    if executable is None:
        executable = shutil.which(APP_NAME) or shutil.which(sys.argv[0]) or APP_NAME
    return f"{executable} hook"


def generate_hook_config(command: str) -> Dict[str, Any]:
    entry = {"matcher": "*", "hooks": [{"type": "command", "command": command}]}
    return {event: [dict(entry)] for event in HOOK_EVENTS}


def settings_path(repo_path) -> Path:
    return Path(repo_path) / SETTINGS_DIR / SETTINGS_FILE


def has_hooks(config_path: Path) -> bool:
    """True if the settings file declares any of our hook events."""
    try:
        data = json.loads(Path(config_path).read_text())
    except (OSError, ValueError):
        return False
    hooks = data.get("hooks") if isinstance(data, dict) else None
    if not isinstance(hooks, dict):
        return False
    return any(event in hooks for event in HOOK_EVENTS)


def hook_status(repo_path) -> HookInstallStatus:
    repo = Path(repo_path)
    config_path = settings_path(repo)
    return HookInstallStatus(
        path=str(repo),
        is_installed=has_hooks(config_path),
        config_path=str(config_path),
        has_gitignore=(repo / ".gitignore").exists(),
    )


def merge_hook_config(config_path: Path, command: str) -> None:
    """Replace the `hooks` key of the settings file, keeping everything else.

    Raises:
        ConfigurationError: If the existing file is not a JSON object
    """
    settings: Dict[str, Any] = {}
    if config_path.exists():
        try:
            settings = json.loads(config_path.read_text())
        except ValueError as e:
            raise ConfigurationError(f"Failed to parse existing {config_path}: {e}")
        if not isinstance(settings, dict):
            raise ConfigurationError(f"{config_path} must contain a JSON object")

    settings["hooks"] = generate_hook_config(command)
    config_path.write_text(json.dumps(settings, indent=2))


def update_gitignore(gitignore_path: Path) -> bool:
    """Append `.claude/` to .gitignore unless already mentioned. Returns True if written."""
    content = gitignore_path.read_text() if gitignore_path.exists() else ""
    if ".claude" in content:
        return False
    if content and not content.endswith("\n"):
        content += "\n"
    content += f"\n# Agent tool local settings (auto-generated)\n{GITIGNORE_ENTRY}\n"
    gitignore_path.write_text(content)
    return True


def install_hooks(repo_path, command: Optional[str] = None) -> HookInstallStatus:
    """Install the hook into `repo_path`.

    Raises:
        ConfigurationError: If the repository does not exist or its settings are unparsable
    """
    repo = Path(repo_path).expanduser().resolve()
    if not repo.is_dir():
        raise ConfigurationError(f"Repository path does not exist: {repo}")

    command = command or hook_command()
    config_path = settings_path(repo)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Updating hook config at {config_path}")
    merge_hook_config(config_path, command)
    if update_gitignore(repo / ".gitignore"):
        logger.info(f"Added {GITIGNORE_ENTRY} to {repo / '.gitignore'}")

    log_event(str(repo), "install_hooks", extra={"command": command})
    return hook_status(repo)
