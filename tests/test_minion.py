"""
Tests for the minion supervisor.

Most tests drive a real child (the current Python interpreter) so the
pipe/pty plumbing is exercised end to end.
"""

import os
import pty
import select
import subprocess
import sys
import termios
import threading
import time

import pytest

from agentdash.exceptions import ChildProcessFailure, InjectionAfterExit
from agentdash.minion import MinionSupervisor, exit_code_for

# Copies stdin bytes to argv[1] until argv[2] carriage returns have arrived
RECORDER = (
    "import os, sys\n"
    "out = open(sys.argv[1], 'wb')\n"
    "remaining = int(sys.argv[2])\n"
    "while remaining:\n"
    "    b = os.read(0, 1)\n"
    "    if not b:\n"
    "        break\n"
    "    out.write(b)\n"
    "    out.flush()\n"
    "    if b == b'\\r':\n"
    "        remaining -= 1\n"
)

# The same, after putting its own pty in raw mode and touching argv[3]
RAW_RECORDER = (
    "import sys, tty\n"
    "tty.setraw(0)\n"
    "open(sys.argv[3], 'w').close()\n"
) + RECORDER


class StdinPipe:
    """A pipe standing in for the user's stdin."""

    def __init__(self):
        read_fd, self.write_fd = os.pipe()
        self.stdin = os.fdopen(read_fd, "rb", buffering=0)

    def write(self, data: bytes) -> None:
        os.write(self.write_fd, data)

    def close_writer(self) -> None:
        if self.write_fd is not None:
            os.close(self.write_fd)
            self.write_fd = None

    def close(self) -> None:
        self.close_writer()
        self.stdin.close()


@pytest.fixture
def stdin_pipe():
    pipe = StdinPipe()
    yield pipe
    pipe.close()


def recorder(out_file, returns=1):
    return [sys.executable, "-c", RECORDER, str(out_file), str(returns)]


def raw_recorder(out_file, ready_file, returns=1):
    return [sys.executable, "-c", RAW_RECORDER, str(out_file), str(returns), str(ready_file)]


def piped_supervisor(command, message_queue, workdir, stdin, **kwargs):
    kwargs.setdefault("poll_interval", 0.05)
    kwargs.setdefault("keystroke_delay", 0.005)
    return MinionSupervisor(
        command,
        message_queue,
        working_dir=str(workdir),
        stdin=stdin,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        interactive=False,
        **kwargs,
    )


class TestExitCode:
    """Test exit status mapping."""

    def test_normal_exit(self):
        """Normal exit codes pass through."""
        assert exit_code_for(0) == 0
        assert exit_code_for(3) == 3

    def test_signal(self):
        """Signal N maps to 128+N."""
        assert exit_code_for(-15) == 143


class TestInject:
    """Test keystroke injection without a child."""

    @pytest.fixture
    def supervisor(self, message_queue, tmp_path):
        sup = MinionSupervisor(
            ["unused"], message_queue, working_dir=str(tmp_path),
            keystroke_delay=0.02, interactive=False,
        )
        sup.writes = []
        sup._write = lambda data: sup.writes.append((time.monotonic(), data))
        return sup

    def test_characters_then_enter_with_delay(self, supervisor):
        """Each character is sent separately, then Enter, with the delay between."""
        supervisor._alive = True
        supervisor.inject("hi")

        assert [data for _, data in supervisor.writes] == [b"h", b"i", b"\r"]
        times = [t for t, _ in supervisor.writes]
        gaps = [later - earlier for earlier, later in zip(times, times[1:])]
        assert all(gap >= 0.019 for gap in gaps)

    def test_multibyte_character_sent_whole(self, supervisor):
        """A multibyte character is one write."""
        supervisor._alive = True
        supervisor.inject("é")
        assert [data for _, data in supervisor.writes] == ["é".encode("utf-8"), b"\r"]

    def test_refuses_after_exit(self, supervisor):
        """Injection after exit raises and writes nothing."""
        with pytest.raises(InjectionAfterExit):
            supervisor.inject("late")
        assert supervisor.writes == []

    def test_empty_command_rejected(self, message_queue):
        """An empty command is refused."""
        with pytest.raises(ChildProcessFailure):
            MinionSupervisor([], message_queue)


class TestPipedMode:
    """Test the non-terminal path against a real child."""

    def test_queued_message_typed_into_child(self, message_queue, tmp_path, stdin_pipe):
        """A queued message reaches the child's stdin as keystrokes then Enter."""
        stdin = stdin_pipe.stdin
        out_file = tmp_path / "received"
        message_queue.enqueue(str(tmp_path), "hi")

        sup = piped_supervisor(recorder(out_file), message_queue, tmp_path, stdin)
        assert sup.run() == 0

        assert out_file.read_bytes() == b"hi\r"
        assert sup.injected_count == 1
        assert not message_queue.file_for(str(tmp_path)).exists()

    def test_messages_delivered_in_order(self, message_queue, tmp_path, stdin_pipe):
        """Queued messages are typed oldest first."""
        stdin = stdin_pipe.stdin
        out_file = tmp_path / "received"
        message_queue.enqueue(str(tmp_path), "one")
        message_queue.enqueue(str(tmp_path), "two")

        sup = piped_supervisor(recorder(out_file, returns=2), message_queue, tmp_path, stdin)
        assert sup.run() == 0
        assert out_file.read_bytes() == b"one\rtwo\r"

    def test_nothing_delivered_after_exit(self, message_queue, tmp_path, stdin_pipe):
        """Messages queued after exit stay queued."""
        stdin = stdin_pipe.stdin
        out_file = tmp_path / "received"
        message_queue.enqueue(str(tmp_path), "hi")

        sup = piped_supervisor(recorder(out_file), message_queue, tmp_path, stdin)
        sup.run()
        assert not sup.is_alive
        assert sup.injection_closed

        message_queue.enqueue(str(tmp_path), "late")
        time.sleep(0.3)
        assert [m.message for m in message_queue.peek_all(str(tmp_path))] == ["late"]

    def test_stdin_forwarded(self, message_queue, tmp_path, stdin_pipe):
        """Our stdin is copied to the child."""
        stdin = stdin_pipe.stdin
        out_file = tmp_path / "received"
        stdin_pipe.write(b"typed\r")

        sup = piped_supervisor(recorder(out_file), message_queue, tmp_path, stdin)
        assert sup.run() == 0
        assert out_file.read_bytes() == b"typed\r"

    def test_stdin_eof_forwarded(self, message_queue, tmp_path, stdin_pipe):
        """EOF on our stdin closes the child's stdin; its exit code comes back."""
        stdin = stdin_pipe.stdin
        stdin_pipe.close_writer()
        command = [sys.executable, "-c", "import sys; sys.stdin.buffer.read(); sys.exit(3)"]

        sup = piped_supervisor(command, message_queue, tmp_path, stdin)
        assert sup.run() == 3
        assert sup.injection_closed

    def test_killed_child_exit_code(self, message_queue, tmp_path, stdin_pipe):
        """A child killed by SIGTERM exits 143."""
        stdin = stdin_pipe.stdin
        command = [sys.executable, "-c", "import os, signal; os.kill(os.getpid(), signal.SIGTERM)"]
        sup = piped_supervisor(command, message_queue, tmp_path, stdin)
        assert sup.run() == 128 + 15

    def test_missing_binary(self, message_queue, tmp_path, stdin_pipe):
        """Unstartable command raises ChildProcessFailure."""
        stdin = stdin_pipe.stdin
        sup = piped_supervisor(["/nonexistent/agent-binary"], message_queue, tmp_path, stdin)
        with pytest.raises(ChildProcessFailure):
            sup.run()

    def test_from_config(self, config, message_queue, tmp_path, stdin_pipe):
        """from_config takes timings from the minion section."""
        stdin = stdin_pipe.stdin
        config.minion.poll_interval = 0.25
        sup = MinionSupervisor.from_config(["x"], message_queue, config, stdin=stdin, interactive=False)
        assert sup.poll_interval == 0.25
        assert sup.keystroke_delay == config.minion.keystroke_delay


class FakeTerminal:
    """A pty pair standing in for the user's terminal; output is drained in the background."""

    def __init__(self):
        self.master, slave = pty.openpty()
        self.initial_mode = termios.tcgetattr(slave)
        self.stdin = os.fdopen(slave, "rb", buffering=0)
        self.stdout = os.fdopen(os.dup(slave), "wb", buffering=0)
        self.received = bytearray()
        self._done = threading.Event()
        self._reader = threading.Thread(target=self._drain, daemon=True)
        self._reader.start()

    def _drain(self):
        while not self._done.is_set():
            readable, _, _ = select.select([self.master], [], [], 0.05)
            if readable:
                try:
                    self.received.extend(os.read(self.master, 1024))
                except OSError:
                    break

    def mode(self):
        return termios.tcgetattr(self.stdin.fileno())

    def close(self):
        self._done.set()
        self._reader.join(timeout=1)
        self.stdout.close()
        self.stdin.close()
        os.close(self.master)


@pytest.fixture
def terminal():
    term = FakeTerminal()
    yield term
    term.close()


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestPtyMode:
    """Test the terminal path using a pty as the fake user terminal."""

    def pty_supervisor(self, command, message_queue, workdir, terminal):
        return MinionSupervisor(
            command,
            message_queue,
            working_dir=str(workdir),
            stdin=terminal.stdin,
            stdout=terminal.stdout,
            interactive=True,
            poll_interval=0.05,
            keystroke_delay=0.005,
        )

    def test_child_sees_terminal_and_mode_restored(self, message_queue, tmp_path, terminal):
        """The child runs on a tty and the user's terminal mode comes back unchanged."""
        sup = self.pty_supervisor(
            [sys.executable, "-c", "import sys; print('tty', sys.stdin.isatty())"],
            message_queue, tmp_path, terminal,
        )
        code = sup.run()
        time.sleep(0.2)

        assert code == 0
        assert b"tty True" in bytes(terminal.received)
        assert terminal.mode() == terminal.initial_mode
        assert sup.injection_closed

    def test_queued_message_typed_through_pty(self, message_queue, tmp_path, terminal):
        """A queued message reaches the child through the pty master as keystrokes then Enter."""
        out_file = tmp_path / "received"
        ready = tmp_path / "ready"
        sup = self.pty_supervisor(raw_recorder(out_file, ready), message_queue, tmp_path, terminal)

        result = {}
        runner = threading.Thread(target=lambda: result.update(code=sup.run()), daemon=True)
        runner.start()
        try:
            assert wait_for(ready.exists)
            message_queue.enqueue(str(tmp_path), "hi")
        finally:
            runner.join(timeout=10)

        assert not runner.is_alive()
        assert result["code"] == 0
        assert out_file.read_bytes() == b"hi\r"
        assert sup.injected_count == 1
        assert not sup.is_alive
        assert sup.injection_closed
        assert not message_queue.file_for(str(tmp_path)).exists()
        assert terminal.mode() == terminal.initial_mode

    def test_interactive_detected_from_stdin(self, message_queue, tmp_path, stdin_pipe):
        """A pipe on stdin selects piped mode."""
        stdin = stdin_pipe.stdin
        sup = MinionSupervisor(["x"], message_queue, stdin=stdin)
        assert not sup.interactive
