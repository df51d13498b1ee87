"""
Observable Event Streams

Sessions expose message, error, status and playback notifications as
independent streams. Observers subscribe with a plain callable and receive
an unsubscribe handle.
"""

from typing import Callable, Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class EventStream(Generic[T]):
    """A synchronous multi-subscriber stream of values."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Callable[[T], None]] = []

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a callback. Returns a function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, value: T) -> int:
        """
        Deliver a value to every subscriber in registration order.

        A failing subscriber is logged and does not prevent delivery to the
        others. Returns the number of subscribers that accepted the value.
        """
        delivered = 0
        for callback in list(self._subscribers):
            try:
                callback(value)
                delivered += 1
            except Exception as e:
                logger.error(
                    "Event subscriber failed",
                    stream=self.name,
                    error=str(e),
                )
        return delivered

    def clear(self) -> None:
        self._subscribers.clear()


__all__ = ["EventStream"]
