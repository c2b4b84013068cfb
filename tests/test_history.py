"""Tests for edgechat.history, edgechat.messages and edgechat.observable."""

from edgechat.history import ChatHistory
from edgechat.messages import Message
from edgechat.observable import Observable


class TestMessage:
    def test_user_and_assistant_constructors(self):
        user = Message.user("hi", b"img")
        reply = Message.assistant("hello")
        assert user.is_user_turn and user.has_image
        assert not reply.is_user_turn and not reply.has_image
        assert user.id != reply.id

    def test_with_content_keeps_identity(self):
        original = Message.user("draft", b"img")
        updated = original.with_content("final")
        assert updated.content == "final"
        assert updated.id == original.id
        assert updated.timestamp == original.timestamp
        assert updated.attached_image == b"img"
        assert original.content == "draft"


class TestChatHistory:
    def test_append_returns_slot_index(self):
        history = ChatHistory()
        assert history.append(Message.user("a")) == 0
        assert history.append(Message.assistant("b")) == 1
        assert len(history) == 2
        assert [m.content for m in history] == ["a", "b"]

    def test_replace_in_place(self):
        history = ChatHistory()
        slot = history.append(Message.assistant("thinking..."))
        assert history.replace(slot, history[slot].with_content("done"))
        assert history[slot].content == "done"

    def test_replace_out_of_range_is_a_no_op(self):
        history = ChatHistory()
        history.append(Message.assistant("x"))
        history.clear()
        assert history.replace(0, Message.assistant("late")) is False
        assert history.replace(-1, Message.assistant("late")) is False
        assert len(history) == 0

    def test_changes_are_published(self):
        history = ChatHistory()
        changes = []
        history.changes.subscribe(changes.append)

        slot = history.append(Message.assistant("a"))
        history.replace(slot, Message.assistant("b"))
        history.replace(5, Message.assistant("ignored"))
        history.clear()

        assert [(c.kind, c.index) for c in changes] == [
            ("append", 0),
            ("replace", 0),
            ("clear", None),
        ]

    def test_last_user_facing_entry(self):
        history = ChatHistory()
        assert history.last_user_facing_entry() is None
        history.append(Message.user("q"))
        assert history.last_user_facing_entry() is None
        reply = Message.assistant("a")
        history.append(reply)
        assert history.last_user_facing_entry() == (1, reply)

    def test_messages_is_a_snapshot(self):
        history = ChatHistory()
        history.append(Message.user("q"))
        snapshot = history.messages
        history.clear()
        assert len(snapshot) == 1


class TestObservable:
    def test_unsubscribe(self):
        subject = Observable()
        seen = []
        unsubscribe = subject.subscribe(seen.append)
        subject.emit(1)
        unsubscribe()
        unsubscribe()
        subject.emit(2)
        assert seen == [1]
        assert len(subject) == 0

    def test_failing_subscriber_does_not_block_others(self, caplog):
        subject = Observable()
        seen = []

        def broken(value):
            raise RuntimeError("subscriber bug")

        subject.subscribe(broken)
        subject.subscribe(seen.append)
        subject.emit("x")

        assert seen == ["x"]
        assert "raised while handling a change" in caplog.text
