"""Chat message value type."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Message:
    """One exchanged message. Immutable: history updates swap in a new value."""

    content: str
    is_user_turn: bool
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=utc_now)
    attached_image: bytes | None = None

    @classmethod
    def user(cls, content: str, image: bytes | None = None) -> Message:
        return cls(content=content, is_user_turn=True, attached_image=image)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(content=content, is_user_turn=False)

    def with_content(self, content: str) -> Message:
        """Return a copy carrying *content*, keeping id, timestamp and image."""
        return replace(self, content=content)

    @property
    def has_image(self) -> bool:
        return self.attached_image is not None

    def __repr__(self) -> str:
        preview = self.content if len(self.content) <= 40 else self.content[:37] + "..."
        role = "user" if self.is_user_turn else "assistant"
        image = ", image" if self.has_image else ""
        return f"Message({role}, {preview!r}{image})"
