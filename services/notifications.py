from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StorageEvent:
    key: str


class ChangeBus(Generic[T]):
    """Minimal subject: subscribers receive every published event in subscription order.

    A failing subscriber is logged and skipped; delivery to the rest continues.
    """

    def __init__(self, name: str = "bus") -> None:
        self.name = name
        self._subscribers: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event: T) -> None:
        # Copy so callbacks may unsubscribe while being notified
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as exc:
                logger.exception("%s: subscriber %r failed on %r: %s", self.name, callback, event, exc)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
