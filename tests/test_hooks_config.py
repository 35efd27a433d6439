"""Tests for hook installation into repository settings."""

import json

import pytest

from agentdash.exceptions import ConfigurationError
from agentdash.hooks_config import (
    HOOK_EVENTS,
    generate_hook_config,
    hook_command,
    hook_status,
    install_hooks,
    update_gitignore,
)


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    return path


class TestGenerateHookConfig:
    """Test the generated hooks block."""

    def test_all_events_present(self):
        """Every hook event gets the command with a wildcard matcher."""
        config = generate_hook_config("/usr/bin/agentdash hook")
        assert set(config) == set(HOOK_EVENTS)
        for entries in config.values():
            assert entries == [{
                "matcher": "*",
                "hooks": [{"type": "command", "command": "/usr/bin/agentdash hook"}],
            }]

    def test_hook_command_explicit_executable(self):
        """Command is the executable plus the hook subcommand."""
        assert hook_command("/opt/agentdash") == "/opt/agentdash hook"


class TestInstallHooks:
    """Test settings merge and .gitignore handling."""

    def test_fresh_install(self, repo):
        """Install writes settings and .gitignore."""
        status = install_hooks(repo, command="agentdash hook")
        settings = json.loads((repo / ".claude" / "settings.local.json").read_text())

        assert set(settings["hooks"]) == set(HOOK_EVENTS)
        assert status.is_installed
        assert status.has_gitignore
        assert ".claude/" in (repo / ".gitignore").read_text()

    def test_existing_settings_preserved(self, repo):
        """Other settings survive; the hooks block is replaced."""
        settings_file = repo / ".claude" / "settings.local.json"
        settings_file.parent.mkdir()
        settings_file.write_text(json.dumps({"permissions": {"allow": ["Bash"]}, "hooks": {"Old": []}}))

        install_hooks(repo, command="agentdash hook")
        settings = json.loads(settings_file.read_text())
        assert settings["permissions"] == {"allow": ["Bash"]}
        assert "Old" not in settings["hooks"]

    def test_unparsable_settings_rejected(self, repo):
        """Broken settings file is not overwritten."""
        settings_file = repo / ".claude" / "settings.local.json"
        settings_file.parent.mkdir()
        settings_file.write_text("{broken")
        with pytest.raises(ConfigurationError):
            install_hooks(repo, command="agentdash hook")

    def test_missing_repo(self, tmp_path):
        """Missing repository raises ConfigurationError."""
        with pytest.raises(ConfigurationError):
            install_hooks(tmp_path / "absent")

    def test_reinstall_is_idempotent(self, repo):
        """Installing twice adds one .gitignore entry."""
        install_hooks(repo, command="agentdash hook")
        install_hooks(repo, command="agentdash hook")
        assert (repo / ".gitignore").read_text().count(".claude") == 1


class TestUpdateGitignore:
    """Test .gitignore editing."""

    def test_appends_with_newline(self, tmp_path):
        """Entry goes on its own line after existing content."""
        gitignore = tmp_path / ".gitignore"
        gitignore.write_text("node_modules")
        assert update_gitignore(gitignore)
        lines = gitignore.read_text().splitlines()
        assert lines[0] == "node_modules"
        assert lines[-1] == ".claude/"

    def test_already_present(self, tmp_path):
        """Existing entry leaves the file alone."""
        gitignore = tmp_path / ".gitignore"
        gitignore.write_text(".claude\n")
        assert not update_gitignore(gitignore)
        assert gitignore.read_text() == ".claude\n"


class TestHookStatus:
    """Test installation detection."""

    def test_not_installed(self, repo):
        """Fresh repo reports nothing installed."""
        status = hook_status(repo)
        assert not status.is_installed
        assert not status.has_gitignore
        assert status.config_path.endswith("settings.local.json")

    def test_unrelated_hooks_not_counted(self, repo):
        """Hooks for other events do not count as installed."""
        settings_file = repo / ".claude" / "settings.local.json"
        settings_file.parent.mkdir()
        settings_file.write_text(json.dumps({"hooks": {"SessionStart": []}}))
        assert not hook_status(repo).is_installed
