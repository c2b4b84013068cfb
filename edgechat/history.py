"""Ordered, mutable log of chat messages."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass

from .messages import Message
from .observable import Observable

logger = logging.getLogger("edgechat")


@dataclass(frozen=True)
class HistoryChange:
    """Describes one mutation. ``index`` is None for ``clear``."""

    kind: str
    index: int | None
    message: Message | None


class ChatHistory:
    """Message log with append and replace-in-place.

    The session controller is the only writer; everything else reads ``messages``
    or subscribes to ``changes``.
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self.changes: Observable[HistoryChange] = Observable()

    def append(self, message: Message) -> int:
        """Append *message* and return its slot index."""
        self._messages.append(message)
        index = len(self._messages) - 1
        self.changes.emit(HistoryChange("append", index, message))
        return index

    def replace(self, index: int, message: Message) -> bool:
        """Swap the message at *index*. Out-of-range is a no-op returning False.

        A stream can race a concurrent ``clear()``, so a vanished slot is expected.
        """
        if not 0 <= index < len(self._messages):
            logger.debug("[EdgeChat History] Ignoring replace at stale slot %d.", index)
            return False
        self._messages[index] = message
        self.changes.emit(HistoryChange("replace", index, message))
        return True

    def clear(self) -> None:
        self._messages.clear()
        self.changes.emit(HistoryChange("clear", None, None))

    def last_user_facing_entry(self) -> tuple[int, Message] | None:
        """The slot that renders as the streaming reply: the last message, if not a user turn."""
        if not self._messages:
            return None
        last = self._messages[-1]
        if last.is_user_turn:
            return None
        return len(self._messages) - 1, last

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __repr__(self) -> str:
        return f"ChatHistory({len(self._messages)} messages)"
