"""Tests for the per-path message queue."""

import json

import pytest

from agentdash.exceptions import StoreError
from agentdash.state.queue import MessageQueue, queue_key


class TestQueueKey:
    """Test path -> file name mapping."""

    def test_separators_replaced(self):
        """Path separators and drive colons become underscores."""
        assert queue_key("/home/u/repo") == "_home_u_repo"
        assert queue_key("C:\\work\\repo") == "C__work_repo"

    def test_empty_path_is_root(self):
        """Empty path maps to "root"."""
        assert queue_key("") == "root"


class TestMessageQueue:
    """Test FIFO behavior and file lifecycle."""

    def test_fifo_order_then_empty(self, message_queue):
        """a, b, c come back in order, then None, and the file is gone."""
        for text in ("a", "b", "c"):
            message_queue.enqueue("/repo", text)

        assert message_queue.file_for("/repo").exists()
        assert [message_queue.pop("/repo").message for _ in range(3)] == ["a", "b", "c"]
        assert message_queue.pop("/repo") is None
        assert not message_queue.file_for("/repo").exists()

    def test_pop_empty(self, message_queue):
        """Popping an unknown path returns None."""
        assert message_queue.pop("/nothing") is None

    def test_message_fields(self, message_queue):
        """Enqueued messages get an id, path and aware timestamp."""
        message = message_queue.enqueue("/repo", "run the tests")
        assert message.id.startswith("msg_")
        assert message.path == "/repo"
        assert message.timestamp.tzinfo is not None

    def test_queues_are_per_path(self, message_queue):
        """Paths do not share a queue."""
        message_queue.enqueue("/a", "for a")
        message_queue.enqueue("/b", "for b")
        assert message_queue.pop("/b").message == "for b"
        assert message_queue.pop("/a").message == "for a"

    def test_peek_does_not_remove(self, message_queue):
        """peek_all leaves messages in place."""
        message_queue.enqueue("/repo", "x")
        assert [m.message for m in message_queue.peek_all("/repo")] == ["x"]
        assert message_queue.pop("/repo").message == "x"

    def test_clear(self, message_queue):
        """clear removes the queue file."""
        message_queue.enqueue("/repo", "x")
        message_queue.clear("/repo")
        assert message_queue.peek_all("/repo") == []
        assert not message_queue.file_for("/repo").exists()

    def test_file_layout(self, config, message_queue):
        """Queue file name and JSON layout are stable."""
        message_queue.enqueue("/home/u/repo", "hello")
        path = config.messages_dir / "messages__home_u_repo.json"
        data = json.loads(path.read_text())
        assert data[0]["message"] == "hello"
        assert data[0]["path"] == "/home/u/repo"
        assert set(data[0]) == {"id", "path", "message", "timestamp"}

    def test_other_instance_sees_queue(self, config, message_queue):
        """The dashboard and the minion are separate processes sharing files."""
        message_queue.enqueue("/repo", "hi")
        assert MessageQueue(config.messages_dir).pop("/repo").message == "hi"

    def test_corrupt_file_raises(self, message_queue):
        """Unparsable queue file raises StoreError."""
        message_queue.messages_dir.mkdir(parents=True, exist_ok=True)
        message_queue.file_for("/repo").write_text("{oops")
        with pytest.raises(StoreError):
            message_queue.pop("/repo")
