"""CLI interface for agentdash."""

import json
import logging
import os
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from . import __version__, eventlog
from .claude.transcript import TranscriptParser
from .config import Config
from .exceptions import (
    AgentDashError,
    ChildProcessFailure,
    ConfigurationError,
    MalformedHookPayload,
    StoreError,
    TranscriptUnreadable,
)
from .hook import HookIngester, run_hook
from .hooks_config import hook_status, install_hooks
from .minion import MinionSupervisor
from .state.models import AgentStatus
from .state.queue import MessageQueue
from .state.repositories import load_repository_paths
from .state.store import StatusStore
from .watcher import TranscriptWatcher

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool, quiet: bool = False, log_file: Optional[Path] = None):
    """Configure logging based on verbosity.

    Args:
        verbose: Enable debug logging
        quiet: Suppress all but errors
        log_file: Log here instead of stderr (hook and minion modes, whose
            terminal belongs to the agent)
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    kwargs = {}
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        kwargs["filename"] = str(log_file)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
        **kwargs,
    )


def _absolute(path: str) -> str:
    return os.path.abspath(os.path.expanduser(path))


def _config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


def _init(ctx: click.Context, log_name: Optional[str] = None) -> Config:
    """Set up logging and the event log for a subcommand."""
    config = _config(ctx)
    log_file = config.log_dir / log_name if log_name else None
    setup_logging(ctx.obj["verbose"], ctx.obj["quiet"], log_file)
    eventlog.set_log_dir(config.log_dir)
    return config


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="YAML config file (default: <config dir>/config.yaml if present)"
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--quiet", "-q", is_flag=True, help="Only log errors")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], verbose: bool, quiet: bool):
    """agentdash - status tracking and input injection for coding agents."""
    try:
        config = Config.load(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    ctx.obj = {"config": config, "verbose": verbose, "quiet": quiet}


@cli.command()
@click.pass_context
def hook(ctx: click.Context):
    """Record one agent hook event read as JSON from stdin.

    Configure the agent tool to run this on PreToolUse, PostToolUse,
    Notification and Stop (see `agentdash install-hooks`).
    """
    config = _init(ctx, log_name="hook.log")
    raw = click.get_text_stream("stdin").read()

    store = StatusStore(config.status_file)
    ingester = HookIngester(
        store,
        TranscriptParser.from_config(config),
        stop_debounce_seconds=config.hook.stop_debounce_seconds,
    )
    try:
        row = run_hook(raw, ingester)
    except (MalformedHookPayload, StoreError) as e:
        logger.error(f"Hook failed: {e}")
        eventlog.log_event(os.getcwd(), "hook", result="fail", error=str(e))
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)
    logger.debug(f"Hook recorded {row.path} -> {row.status.value}")


@cli.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def minion(ctx: click.Context, command: Tuple[str, ...]):
    """Run COMMAND and type queued messages into it.

    Example:
        agentdash minion claude
        agentdash minion -- claude --model opus
    """
    config = _init(ctx, log_name="minion.log")
    supervisor = MinionSupervisor.from_config(list(command), MessageQueue(config.messages_dir), config)
    try:
        code = supervisor.run()
    except ChildProcessFailure as e:
        logger.error(str(e))
        click.echo(f"Error: {e}", err=True)
        ctx.exit(127)
    ctx.exit(code)


def _row_summary(row: AgentStatus) -> str:
    return f"{row.status.value:8} {row.path}"


def _echo_changes(previous: Dict[str, str], rows: List[AgentStatus]) -> None:
    """Print rows whose status differs from `previous`, then update it."""
    for row in rows:
        if previous.get(row.path) != row.status.value:
            click.echo(f"{time.strftime('%H:%M:%S')} {_row_summary(row)}")
            previous[row.path] = row.status.value


@cli.command()
@click.option(
    "--repo", "-r", "repos",
    multiple=True,
    help="Extra repository path to treat as known (repeatable)"
)
@click.pass_context
def watch(ctx: click.Context, repos: Tuple[str, ...]):
    """Watch transcripts and print status changes until interrupted."""
    config = _init(ctx)
    store = StatusStore(config.status_file)
    extra = [_absolute(r) for r in (*config.watcher.repositories, *repos)]

    def known_paths() -> List[str]:
        paths = load_repository_paths(config.repositories_file)
        return list(dict.fromkeys(paths + extra))

    watcher = TranscriptWatcher(
        store,
        TranscriptParser.from_config(config),
        known_paths=known_paths,
        use_polling=config.watcher.use_polling,
        polling_interval=config.watcher.polling_interval,
    )

    seen: Dict[str, str] = {}
    store.subscribe(lambda rows: _echo_changes(seen, rows))
    watcher.start()
    click.echo(f"Watching {len(watcher.known_paths)} repositories (Ctrl-C to stop)")
    try:
        while True:
            # Hook processes write from outside; pick their changes up too
            _echo_changes(seen, store.load())
            time.sleep(config.watcher.polling_interval)
    except KeyboardInterrupt:
        pass
    finally:
        watcher.stop()


@cli.command()
@click.argument("path")
@click.argument("message")
@click.pass_context
def send(ctx: click.Context, path: str, message: str):
    """Queue MESSAGE for the minion running in PATH."""
    config = _init(ctx)
    try:
        queued = MessageQueue(config.messages_dir).enqueue(_absolute(path), message)
    except StoreError as e:
        raise click.ClickException(str(e))
    click.echo(f"Queued {queued.id} for {queued.path}")


@cli.command()
@click.argument("path")
@click.option("--clear", is_flag=True, help="Drop all pending messages")
@click.pass_context
def queue(ctx: click.Context, path: str, clear: bool):
    """List messages waiting for the minion in PATH."""
    config = _init(ctx)
    message_queue = MessageQueue(config.messages_dir)
    path = _absolute(path)
    try:
        if clear:
            message_queue.clear(path)
            click.echo(f"Cleared queue for {path}")
            return
        messages = message_queue.peek_all(path)
    except StoreError as e:
        raise click.ClickException(str(e))

    if not messages:
        click.echo("No pending messages")
        return
    for message in messages:
        click.echo(f"{message.id}  {message.message}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the table as JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool):
    """Show the status table with each agent's last message."""
    config = _init(ctx)
    parser = TranscriptParser.from_config(config)
    rows = StatusStore(config.status_file).load()

    report = []
    for row in rows:
        entry = row.to_dict()
        entry["last_message"] = ""
        if row.transcript_path:
            try:
                last = parser.last_message(row.transcript_path)
            except TranscriptUnreadable as e:
                logger.debug(str(e))
                last = None
            if last is not None:
                entry["last_message"] = last.display
        report.append(entry)

    if as_json:
        click.echo(json.dumps(report, indent=2))
        return
    if not report:
        click.echo("No agents recorded")
        return
    for row, entry in zip(rows, report):
        click.echo(_row_summary(row))
        if entry["last_message"]:
            click.echo(f"         {entry['last_message']}")


@cli.command("install-hooks")
@click.argument("repo", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--command", "hook_cmd", default=None, help="Hook command (default: <agentdash> hook)")
@click.pass_context
def install_hooks_cmd(ctx: click.Context, repo: Path, hook_cmd: Optional[str]):
    """Install the agentdash hook into REPO's agent settings."""
    _init(ctx)
    try:
        result = install_hooks(repo, command=hook_cmd)
    except AgentDashError as e:
        raise click.ClickException(str(e))
    click.echo(f"Hooks installed in {result.config_path}")


@cli.command("hook-status")
@click.argument("repo", type=click.Path(file_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
@click.pass_context
def hook_status_cmd(ctx: click.Context, repo: Path, as_json: bool):
    """Report whether the agentdash hook is installed in REPO."""
    _init(ctx)
    result = hook_status(repo.expanduser().resolve())
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    state = "installed" if result.is_installed else "not installed"
    click.echo(f"{result.path}: hooks {state} ({result.config_path})")


def main():
    cli()


if __name__ == "__main__":
    main()
