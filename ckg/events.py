"""
Typed publish/subscribe channels.

One :class:`EventChannel` exists per concern (``file_changes``,
``index_progress``, ``chunking_progress``) so consumers can be swapped
without touching the components that publish.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, TypeVar, Union

from .models import FileChange, IndexProgress

logger = logging.getLogger(__name__)

E = TypeVar("E")

Subscriber = Callable[[E], Union[None, Awaitable[None]]]


class EventChannel(Generic[E]):
    """
    A named channel that fans events out to its subscribers.

    Subscribers may be plain callables or coroutine functions.  A failing
    subscriber is logged and never affects the publisher or the other
    subscribers.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register *callback* and return a function that unregisters it.
        """
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: E) -> None:
        """Deliver *event* to every subscriber in registration order."""
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("[events] Subscriber on %s failed: %s", self.name, exc)


@dataclass
class EventBus:
    """The set of channels one CKG instance publishes on."""

    file_changes: EventChannel[FileChange] = field(
        default_factory=lambda: EventChannel("file_changes")
    )
    index_progress: EventChannel[IndexProgress] = field(
        default_factory=lambda: EventChannel("index_progress")
    )
    chunking_progress: EventChannel[IndexProgress] = field(
        default_factory=lambda: EventChannel("chunking_progress")
    )
