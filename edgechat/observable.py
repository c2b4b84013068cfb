"""Minimal change-notification subject used for published state."""

from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger("edgechat")

T = TypeVar("T")


class Observable(Generic[T]):
    """Broadcasts values to subscribers, synchronously, in subscription order.

    Callbacks run on the thread that calls ``emit``; in EdgeChat that is always the
    event loop owning the published state.
    """

    def __init__(self) -> None:
        self._subscribers: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, value: T) -> None:
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                logger.warning(
                    "[EdgeChat] Subscriber %r raised while handling a change.",
                    callback,
                    exc_info=True,
                )

    def __len__(self) -> int:
        return len(self._subscribers)
