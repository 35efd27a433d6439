"""
Minion supervisor: run an agent CLI transparently and type queued messages into it.

Two modes, picked from whether our stdin is a terminal:

- Interactive: the child runs on a fresh pty. The real terminal goes raw,
  pty output is copied to stdout and stdin is copied to the pty. The pty
  master is also where queued messages are typed.
- Piped: the child inherits stdout/stderr and reads a pipe we own. Our
  stdin is copied into that pipe; EOF on our stdin is forwarded.

A polling loop pops messages queued for the working directory and types
them one character at a time, then presses Enter (\\r), so the child's
input handling sees keystrokes rather than a paste.

Shutdown order once the child exits:
    alive flag off -> polling loop stopped -> grace period
    -> injection pipe/pty closed -> terminal restored -> exit code returned

Usage:
    supervisor = MinionSupervisor(["claude"], MessageQueue(config.messages_dir))
    sys.exit(supervisor.run())
"""

import fcntl
import logging
import os
import pty
import select
import signal
import subprocess
import sys
import termios
import threading
import time
import tty
from typing import List, Optional, Sequence

from .eventlog import log_event
from .exceptions import ChildProcessFailure, InjectionAfterExit, StoreError
from .state.queue import MessageQueue

logger = logging.getLogger(__name__)

READ_SIZE = 4096
SELECT_TIMEOUT = 0.1  # Forwarding loops re-check the stop flag this often
WAIT_TICK = 0.05
THREAD_JOIN_TIMEOUT = 1.0


def exit_code_for(returncode: int) -> int:
    """Shell convention: death by signal N exits 128+N."""
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


def _write_all(fd: int, data: bytes) -> None:
    while data:
        written = os.write(fd, data)
        data = data[written:]


def _make_controlling_tty() -> None:
    # Runs in the child after setsid(): adopt the pty as controlling terminal
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class MinionSupervisor:
    """Wraps one child process and feeds it queued messages."""

    def __init__(
        self,
        command: Sequence[str],
        queue: MessageQueue,
        working_dir: Optional[str] = None,
        poll_interval: float = 0.5,
        keystroke_delay: float = 0.01,
        shutdown_grace: float = 0.05,
        stdin=None,
        stdout=None,
        stderr=None,
        interactive: Optional[bool] = None,
    ):
        if not command:
            raise ChildProcessFailure("minion mode requires a command to run")
        self.command: List[str] = list(command)
        self.queue = queue
        self.working_dir = working_dir or os.getcwd()
        self.poll_interval = poll_interval
        self.keystroke_delay = keystroke_delay
        self.shutdown_grace = shutdown_grace
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout
        self.stderr = stderr
        self.interactive = self._stdin_is_terminal() if interactive is None else interactive

        self._process: Optional[subprocess.Popen] = None
        self._master_fd: Optional[int] = None
        self._saved_tty = None
        self._old_winch_handler = None

        # Single source of truth for "may we still type into the child"
        self._alive = False
        self._alive_lock = threading.Lock()

        self._stop = threading.Event()
        self._stdin_done = threading.Event()
        self._poller: Optional[threading.Thread] = None
        self._input_forwarder: Optional[threading.Thread] = None
        self._output_forwarder: Optional[threading.Thread] = None
        self._shutdown_done = False
        self.injected_count = 0

    @classmethod
    def from_config(cls, command: Sequence[str], queue: MessageQueue, config, **kwargs) -> "MinionSupervisor":
        return cls(
            command,
            queue,
            poll_interval=config.minion.poll_interval,
            keystroke_delay=config.minion.keystroke_delay,
            shutdown_grace=config.minion.shutdown_grace,
            **kwargs,
        )

    # --- Introspection ---

    def _stdin_is_terminal(self) -> bool:
        try:
            return os.isatty(self.stdin.fileno())
        except (AttributeError, ValueError, OSError):
            return False

    @property
    def is_alive(self) -> bool:
        with self._alive_lock:
            return self._alive

    @property
    def injection_closed(self) -> bool:
        """True once the pty master / stdin pipe has been released."""
        if self.interactive:
            return self._master_fd is None
        return self._process is None or self._process.stdin is None or self._process.stdin.closed

    def _stdout_fd(self) -> int:
        return (self.stdout if self.stdout is not None else sys.stdout).fileno()

    # --- Startup ---

    def _start_interactive(self) -> None:
        master_fd, slave_fd = pty.openpty()
        stdin_fd = self.stdin.fileno()
        self._copy_window_size(stdin_fd, master_fd)
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.working_dir,
                start_new_session=True,
                preexec_fn=_make_controlling_tty,
                close_fds=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            os.close(slave_fd)
            raise ChildProcessFailure(f"Failed to start {self.command[0]}: {e}")
        os.close(slave_fd)
        self._master_fd = master_fd

        self._saved_tty = termios.tcgetattr(stdin_fd)
        tty.setraw(stdin_fd)
        if threading.current_thread() is threading.main_thread():
            self._old_winch_handler = signal.signal(
                signal.SIGWINCH,
                lambda signum, frame: self._copy_window_size(stdin_fd, master_fd),
            )

        self._output_forwarder = threading.Thread(
            target=self._forward_output, name="minion-pty-output", daemon=True
        )
        self._output_forwarder.start()

    def _start_piped(self) -> None:
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=self.stdout,
                stderr=self.stderr,
                cwd=self.working_dir,
            )
        except OSError as e:
            raise ChildProcessFailure(f"Failed to start {self.command[0]}: {e}")

    @staticmethod
    def _copy_window_size(from_fd: int, to_fd: int) -> None:
        try:
            size = fcntl.ioctl(from_fd, termios.TIOCGWINSZ, b"\0" * 8)
            fcntl.ioctl(to_fd, termios.TIOCSWINSZ, size)
        except OSError:
            pass  # Not a terminal, or the pty is already gone

    # --- Forwarding loops ---

    def _forward_output(self) -> None:
        """pty -> stdout until the pty reports EOF/EIO."""
        out_fd = self._stdout_fd()
        while True:
            try:
                data = os.read(self._master_fd, READ_SIZE)
            except (OSError, TypeError):
                break  # EIO once the child side is fully closed
            if not data:
                break
            try:
                _write_all(out_fd, data)
            except OSError as e:
                logger.warning(f"Writing child output failed: {e}")
                break

    def _forward_input(self) -> None:
        """stdin -> child until EOF or stop."""
        try:
            in_fd = self.stdin.fileno()
        except (AttributeError, ValueError, OSError) as e:
            logger.warning(f"stdin not forwardable: {e}")
            self._stdin_done.set()
            return

        while not self._stop.is_set():
            try:
                readable, _, _ = select.select([in_fd], [], [], SELECT_TIMEOUT)
            except (OSError, ValueError):
                break
            if not readable:
                continue
            try:
                data = os.read(in_fd, READ_SIZE)
            except OSError:
                break
            if not data:
                break
            try:
                with self._alive_lock:
                    if not self._alive:
                        break
                    self._write(data)
            except (OSError, ValueError) as e:
                logger.warning(f"Forwarding stdin failed: {e}")
                break
        self._stdin_done.set()

    def _write(self, data: bytes) -> None:
        """Write to the child's input. Callers hold _alive_lock."""
        if self.interactive:
            _write_all(self._master_fd, data)
        else:
            self._process.stdin.write(data)
            self._process.stdin.flush()

    # --- Injection ---

    def _write_if_alive(self, data: bytes) -> None:
        with self._alive_lock:
            if not self._alive:
                raise InjectionAfterExit("child exited before the message was fully typed")
            self._write(data)

    def inject(self, text: str) -> None:
        """Type `text` one character at a time, then press Enter.

        Raises:
            InjectionAfterExit: If the child exits before or during typing
            OSError: If the child's input is broken
        """
        for char in text:
            self._write_if_alive(char.encode("utf-8"))
            time.sleep(self.keystroke_delay)
        self._write_if_alive(b"\r")

    def _poll_messages(self) -> None:
        logger.info(f"Polling minion messages for {self.working_dir}")
        while not self._stop.wait(self.poll_interval):
            if not self.is_alive:
                break
            try:
                message = self.queue.pop(self.working_dir)
            except StoreError as e:
                logger.error(f"Error checking minion messages: {e}")
                continue
            if message is None:
                continue

            logger.info(f"Injecting {message.id}: {message.message[:80]!r}")
            try:
                self.inject(message.message)
            except InjectionAfterExit as e:
                logger.info(f"Dropped {message.id}: {e}")
                log_event(self.working_dir, "inject", result="dropped", extra={"message_id": message.id})
                continue
            except (OSError, ValueError) as e:
                logger.error(f"Writing {message.id} to child failed: {e}")
                log_event(self.working_dir, "inject", result="fail", error=str(e),
                          extra={"message_id": message.id})
                continue
            self.injected_count += 1
            log_event(self.working_dir, "inject", extra={"message_id": message.id, "chars": len(message.message)})
        logger.info("Message polling stopped")

    # --- Run / shutdown ---

    def run(self) -> int:
        """Start the child, supervise it, and return its exit code.

        Raises:
            ChildProcessFailure: If the child cannot be started
        """
        if self.interactive:
            self._start_interactive()
        else:
            self._start_piped()

        with self._alive_lock:
            self._alive = True
        logger.info(
            f"Started {self.command[0]} (pid {self._process.pid}, "
            f"{'pty' if self.interactive else 'pipe'} mode) in {self.working_dir}"
        )
        log_event(self.working_dir, "minion_start", extra={"command": self.command, "pid": self._process.pid})

        self._input_forwarder = threading.Thread(
            target=self._forward_input, name="minion-stdin", daemon=True
        )
        self._input_forwarder.start()
        self._poller = threading.Thread(target=self._poll_messages, name="minion-poller", daemon=True)
        self._poller.start()

        try:
            returncode = self._wait()
        finally:
            self._shutdown()

        code = exit_code_for(returncode)
        logger.info(f"{self.command[0]} exited with {code}")
        log_event(self.working_dir, "minion_exit", extra={"exit_code": code})
        return code

    def _wait(self) -> int:
        if self.interactive:
            return self._process.wait()

        while True:
            try:
                return self._process.wait(timeout=WAIT_TICK)
            except subprocess.TimeoutExpired:
                pass
            if self._stdin_done.is_set():
                # Our stdin hit EOF: stop typing, then let the child see EOF
                self._stop_injection()
                self._close_injection()
                return self._process.wait()

    def _stop_injection(self) -> None:
        with self._alive_lock:
            self._alive = False
        self._stop.set()
        time.sleep(self.shutdown_grace)
        if self._poller is not None and self._poller is not threading.current_thread():
            self._poller.join(timeout=THREAD_JOIN_TIMEOUT)

    def _close_injection(self) -> None:
        if self.interactive:
            if self._output_forwarder is not None:
                # Drain what the child wrote before it exited
                self._output_forwarder.join(timeout=THREAD_JOIN_TIMEOUT)
            if self._master_fd is not None:
                try:
                    os.close(self._master_fd)
                except OSError:
                    pass
                self._master_fd = None
        elif self._process is not None and self._process.stdin and not self._process.stdin.closed:
            try:
                self._process.stdin.close()
            except (OSError, ValueError):
                pass  # Child already closed its end

    def _restore_terminal(self) -> None:
        if self._saved_tty is not None:
            try:
                termios.tcsetattr(self.stdin.fileno(), termios.TCSADRAIN, self._saved_tty)
            except (OSError, termios.error) as e:
                logger.warning(f"Could not restore terminal mode: {e}")
            self._saved_tty = None
        if self._old_winch_handler is not None:
            signal.signal(signal.SIGWINCH, self._old_winch_handler)
            self._old_winch_handler = None

    def _shutdown(self) -> None:
        if self._shutdown_done:
            return
        self._shutdown_done = True
        self._stop_injection()
        self._close_injection()
        if self._input_forwarder is not None:
            self._input_forwarder.join(timeout=THREAD_JOIN_TIMEOUT)
        self._restore_terminal()
