"""
Transcript watcher: status inference from transcript writes.

The status file is the single trigger. Every time it changes, the watcher
recomputes which sessions are active for known repositories and keeps
exactly one file observer per active session:

    status file changed
        -> refresh(): diff active sessions vs watched sessions
            -> start observers for new sessions
            -> stop observers for vanished / rotated sessions

    transcript written
        -> handle_transcript_change(): resolve project, refresh the
           last-message cache, maybe promote waiting/idle -> running

Observers come from watchdog; PollingObserver is the fallback for
platforms (or filesystems) without native change events.

Usage:
    watcher = TranscriptWatcher(store, parser, cache, known_paths=["/repo"])
    watcher.start()
    # ... runs in background threads
    watcher.stop()
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from .claude.transcript import LastMessage, TranscriptParser
from .eventlog import log_event
from .exceptions import StoreError, TranscriptUnreadable
from .state.cache import LastMessageCache
from .state.models import AgentStatus, Status, utcnow
from .state.store import StatusStore

logger = logging.getLogger(__name__)

KnownPaths = Union[Iterable[str], Callable[[], Iterable[str]]]

OBSERVER_JOIN_TIMEOUT = 2.0


def is_under(path: str, prefixes: Iterable[str]) -> bool:
    """True if `path` equals or sits below one of `prefixes`."""
    path = path.rstrip("/") or "/"
    for prefix in prefixes:
        prefix = prefix.rstrip("/") or "/"
        if path == prefix or path.startswith(prefix if prefix == "/" else prefix + "/"):
            return True
    return False


def next_status(row: AgentStatus, message: Optional[LastMessage]) -> Optional[Status]:
    """Status a transcript write should move `row` to, or None for no change.

    `message` is the newest qualifying message of either role.

    - waiting: a fresh user turn, or assistant output newer than the row's
      last activity, means the agent is working again
    - idle/unknown: any conversational message means it is working
    """
    if message is None or message.is_tool_call:
        return None

    if row.status is Status.WAITING:
        if message.role == "user":
            return Status.RUNNING
        if (
            message.role == "assistant"
            and message.timestamp is not None
            and message.timestamp > row.last_activity
        ):
            return Status.RUNNING
        return None

    if row.status in (Status.IDLE, Status.UNKNOWN):
        return Status.RUNNING

    return None


class _FileEventHandler(FileSystemEventHandler):
    """Forwards events that touch one specific file."""

    def __init__(self, target: Path, callback: Callable[[], None]):
        super().__init__()
        self.target = str(target)
        self.callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if event.event_type not in ("created", "modified", "moved"):
            return
        paths = {str(event.src_path), str(getattr(event, "dest_path", "") or "")}
        if self.target in paths:
            self.callback()


def stop_observer(observer) -> None:
    """Stop an observer thread and wait briefly for it to exit."""
    observer.stop()
    try:
        observer.join(timeout=OBSERVER_JOIN_TIMEOUT)
    except RuntimeError as e:
        # Never started, or stopping from inside its own dispatch thread
        logger.debug(f"Observer join skipped: {e}")


@dataclass
class SessionWatch:
    """One observer bound to one session's transcript file."""

    session_id: str
    project_path: str
    transcript_path: Path
    observer: object

    def stop(self) -> None:
        stop_observer(self.observer)


class TranscriptWatcher:
    """Keeps per-session transcript observers in step with the status table."""

    def __init__(
        self,
        store: StatusStore,
        parser: TranscriptParser,
        cache: Optional[LastMessageCache] = None,
        known_paths: KnownPaths = (),
        observer_factory: Optional[Callable[[], object]] = None,
        use_polling: bool = False,
        polling_interval: float = 1.0,
    ):
        self.store = store
        self.parser = parser
        self.cache = cache or LastMessageCache()
        self._known_paths_source = known_paths
        self._observer_factory = observer_factory
        self._use_polling = use_polling
        self._polling_interval = polling_interval

        # Guards _watches, _project_sessions and _known_paths
        self._lock = threading.RLock()
        self._watches: Dict[str, SessionWatch] = {}
        self._project_sessions: Dict[str, str] = {}
        self._known_paths: List[str] = []
        self._status_observer = None
        self._running = False
        self.refresh_known_paths()

    # --- Observers ---

    def _new_observer(self):
        if self._observer_factory is not None:
            return self._observer_factory()
        if self._use_polling:
            return PollingObserver(timeout=self._polling_interval)
        return Observer()

    def _start_observer(self, handler: FileSystemEventHandler, directory: Path):
        """Schedule and start an observer, falling back to polling if native watching fails."""
        observer = self._new_observer()
        try:
            observer.schedule(handler, str(directory), recursive=False)
            observer.start()
        except OSError as e:
            if self._observer_factory is not None or self._use_polling:
                raise
            logger.warning(f"Native file watching failed for {directory} ({e}); using polling")
            observer = PollingObserver(timeout=self._polling_interval)
            observer.schedule(handler, str(directory), recursive=False)
            observer.start()
        return observer

    # --- Lifecycle ---

    def start(self) -> None:
        """Correct stale statuses, start session watches, then watch the status file."""
        if self._running:
            return
        self._running = True
        self.refresh_known_paths()
        self.correct_statuses()
        self.refresh()

        status_dir = self.store.status_file.parent
        status_dir.mkdir(parents=True, exist_ok=True)
        handler = _FileEventHandler(self.store.status_file, self._on_status_file_changed)
        self._status_observer = self._start_observer(handler, status_dir)
        logger.info(f"Watching status file {self.store.status_file}")
        log_event(None, "watcher_start", extra={"known_paths": len(self.known_paths)})

    def stop(self) -> None:
        """Stop the status-file observer and every session observer."""
        self._running = False
        if self._status_observer is not None:
            stop_observer(self._status_observer)
            self._status_observer = None

        with self._lock:
            watches = list(self._watches.values())
            self._watches.clear()
            self._project_sessions.clear()
        for watch in watches:
            watch.stop()
        logger.info(f"Stopped transcript watcher ({len(watches)} session watches closed)")
        log_event(None, "watcher_stop", extra={"sessions": len(watches)})

    @property
    def is_running(self) -> bool:
        return self._running

    # --- Known repositories ---

    @property
    def known_paths(self) -> List[str]:
        with self._lock:
            return list(self._known_paths)

    def refresh_known_paths(self) -> List[str]:
        source = self._known_paths_source
        paths = source() if callable(source) else source
        with self._lock:
            self._known_paths = [str(p) for p in paths]
            return list(self._known_paths)

    def set_known_repositories(self, paths: Iterable[str]) -> None:
        """Replace the known repository set, then re-correct and re-diff."""
        self._known_paths_source = [str(p) for p in paths]
        self.refresh_known_paths()
        self.correct_statuses()
        self.refresh()

    # --- Session bookkeeping ---

    @property
    def watched_sessions(self) -> List[str]:
        with self._lock:
            return sorted(self._watches)

    def session_for_project(self, project_path: str) -> Optional[str]:
        with self._lock:
            return self._project_sessions.get(project_path)

    def _on_status_file_changed(self) -> None:
        try:
            self.refresh()
        except Exception as e:
            # Keep the observer thread alive
            logger.exception(f"Refresh after status change failed: {e}")

    def _active_sessions(self, rows: List[AgentStatus], known: List[str]) -> Dict[str, Tuple[str, Path]]:
        """session_id -> (project_path, transcript_path) for known rows."""
        active: Dict[str, Tuple[str, Path]] = {}
        for row in rows:
            if not is_under(row.path, known):
                continue
            session_id, transcript_path = row.session_id, row.transcript_path
            if not session_id or not transcript_path:
                info = self.parser.find_most_recent_transcript(row.path)
                if info is None:
                    continue
                session_id, transcript_path = info.session_id, str(info.path)
            active[session_id] = (row.path, Path(transcript_path))
        return active

    def refresh(self) -> None:
        """Diff active sessions against watched sessions and reconcile."""
        known = self.refresh_known_paths()
        try:
            rows = self.store.load()
        except StoreError as e:
            logger.error(f"Cannot refresh watches: {e}")
            return
        active = self._active_sessions(rows, known)

        to_stop: List[SessionWatch] = []
        with self._lock:
            # A project that moved to a new session drops its old watch
            for session_id, (project, _) in active.items():
                previous = self._project_sessions.get(project)
                if previous and previous != session_id and previous in self._watches:
                    to_stop.append(self._watches.pop(previous))
                    logger.info(f"Session rotated for {project}: {previous} -> {session_id}")

            for session_id in list(self._watches):
                if session_id not in active:
                    watch = self._watches.pop(session_id)
                    if self._project_sessions.get(watch.project_path) == session_id:
                        del self._project_sessions[watch.project_path]
                    to_stop.append(watch)

            for session_id, (project, transcript_path) in active.items():
                self._project_sessions[project] = session_id
                if session_id in self._watches:
                    continue
                watch = self._watch_session(session_id, project, transcript_path)
                if watch is not None:
                    self._watches[session_id] = watch

        for watch in to_stop:
            watch.stop()
            logger.info(f"Stopped watching session {watch.session_id}")
            log_event(watch.project_path, "session_unwatched", extra={"session_id": watch.session_id})

    def _watch_session(self, session_id: str, project: str, transcript_path: Path) -> Optional[SessionWatch]:
        if not transcript_path.parent.is_dir():
            logger.warning(f"Transcript directory missing for session {session_id}: {transcript_path.parent}")
            return None
        handler = _FileEventHandler(
            transcript_path, lambda: self._on_transcript_changed(transcript_path)
        )
        try:
            observer = self._start_observer(handler, transcript_path.parent)
        except OSError as e:
            logger.warning(f"Cannot watch transcript {transcript_path}: {e}")
            return None
        logger.info(f"Watching session {session_id} for {project}: {transcript_path}")
        log_event(project, "session_watched", extra={"session_id": session_id})
        return SessionWatch(session_id, project, transcript_path, observer)

    # --- Transcript changes ---

    def _on_transcript_changed(self, transcript_path: Path) -> None:
        try:
            self.handle_transcript_change(transcript_path)
        except Exception as e:
            logger.exception(f"Handling change to {transcript_path} failed: {e}")

    def resolve_project(self, transcript_path) -> Optional[str]:
        """Find the project a transcript belongs to.

        Re-escapes every candidate path and compares with the transcript's
        directory name; the session mapping breaks ties the escaping cannot.
        """
        known = self.known_paths
        try:
            rows = self.store.load()
        except StoreError:
            rows = []
        candidates = list(known) + [r.path for r in rows if is_under(r.path, known) and r.path not in known]

        project = self.parser.project_for_transcript(transcript_path, candidates)
        if project is not None:
            return project

        session_id = Path(transcript_path).stem
        with self._lock:
            for project_path, sid in self._project_sessions.items():
                if sid == session_id:
                    return project_path
        return None

    def handle_transcript_change(self, transcript_path) -> Optional[Status]:
        """Refresh the cache and promote the owning row to running when warranted.

        Returns:
            The new status if the row changed, else None
        """
        project = self.resolve_project(transcript_path)
        if project is None:
            logger.debug(f"No known project for transcript {transcript_path}")
            return None

        try:
            message, newest = self.parser.latest_messages(transcript_path)
        except TranscriptUnreadable as e:
            logger.warning(str(e))
            return None

        if message is not None:
            self.cache.update(project, message.display, message.content)

        changed: Dict[str, Status] = {}

        def promote(rows: List[AgentStatus]) -> bool:
            for row in rows:
                if row.path != project:
                    continue
                new_status = next_status(row, newest)
                if new_status is None or new_status is row.status:
                    return False
                changed["from"], changed["to"] = row.status, new_status
                row.status = new_status
                row.last_activity = utcnow()
                return True
            return False

        try:
            self.store.update(promote)
        except StoreError as e:
            logger.error(f"Could not persist status for {project}: {e}")
            return None

        if changed:
            logger.info(f"{project}: {changed['from'].value} -> {changed['to'].value} (transcript)")
            log_event(
                project,
                "transcript_transition",
                extra={"from": changed["from"].value, "to": changed["to"].value},
            )
            return changed["to"]
        return None

    # --- Startup correction ---

    def correct_statuses(self) -> None:
        """Re-derive every known path's status from its transcript's newest activity.

        Persisted state from a previous run is not trusted. A known
        repository with a discoverable transcript but no row gets one.
        """
        known = self.known_paths
        if not known:
            return

        def correct(rows: List[AgentStatus]) -> bool:
            changed = False
            by_path = {row.path: row for row in rows}

            for repo_path in known:
                if repo_path in by_path:
                    continue
                info = self.parser.find_most_recent_transcript(repo_path)
                if info is None:
                    continue
                row = AgentStatus(
                    path=repo_path,
                    status=Status.UNKNOWN,
                    session_id=info.session_id,
                    transcript_path=str(info.path),
                )
                rows.append(row)
                by_path[repo_path] = row
                changed = True

            for row in rows:
                if not is_under(row.path, known):
                    continue
                corrected = self._derive_status(row)
                if corrected is None or corrected is row.status:
                    continue
                logger.info(f"Corrected {row.path}: {row.status.value} -> {corrected.value}")
                row.status = corrected
                row.last_activity = utcnow()
                changed = True
            return changed

        try:
            self.store.update(correct)
        except StoreError as e:
            logger.error(f"Startup correction failed: {e}")

    def _derive_status(self, row: AgentStatus) -> Optional[Status]:
        transcript_path = row.transcript_path
        if not transcript_path:
            info = self.parser.find_most_recent_transcript(row.path)
            if info is None:
                return None
            transcript_path = str(info.path)
        try:
            return self.parser.determine_session_status(transcript_path)
        except TranscriptUnreadable as e:
            logger.warning(f"{e}; marking {row.path} unknown")
            return Status.UNKNOWN
