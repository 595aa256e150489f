"""Typed event channels for inter-module communication.

Each event kind gets its own ``Channel[T]`` so publishers and subscribers
agree on one payload type instead of sharing untyped string topics.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Generic, TypeVar

from utils.log_utils import tprint

T = TypeVar("T")


class Channel(Generic[T]):
    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Callable[[T], object]] = []

    def subscribe(self, handler: Callable[[T], object]) -> Callable[[], None]:
        """Register ``handler``; the returned callable unsubscribes it."""
        self._subscribers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return _unsubscribe

    def publish(self, payload: T) -> int:
        """Deliver to every subscriber; returns how many handled it cleanly.

        A failing subscriber is logged and skipped so the others still run.
        """
        delivered = 0
        for handler in list(self._subscribers):
            try:
                handler(payload)
            except Exception as exc:
                tprint(f"[EVENTS][ERROR] {self.name} subscriber failed: {exc}")
                continue
            delivered += 1
        return delivered

    def __len__(self) -> int:
        return len(self._subscribers)
