"""Chat notification channel between the streaming core and the UI.

Notifications are delivered one at a time, in publish order, so a renderer
sees stream deltas exactly as they were applied.  The channel is focused on
one conversation: a notification whose ``chat_id`` names another chat is
dropped before any handler sees it, which keeps output of sessions from a
previous conversation off the screen.  Notifications without a ``chat_id``
(clear, reset) are always delivered.
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from kariz_chat.types import ChatEvent, EventType

_logger = logging.getLogger(__name__)

Handler = Callable[[ChatEvent], Any]


@dataclass(frozen=True)
class _Subscription:
    handler: Handler
    types: frozenset[EventType]  # empty: every type

    def wants(self, event_type: EventType) -> bool:
        return not self.types or event_type in self.types


class EventBus:
    """Ordered, chat-scoped pub/sub for :class:`ChatEvent` notifications."""

    def __init__(self, max_history: int = 200, chat_id: str | None = None) -> None:
        self._subscriptions: list[_Subscription] = []
        self._history: deque[ChatEvent] = deque(maxlen=max_history)
        self._focus = chat_id
        self._dropped = 0

    @property
    def focused_chat(self) -> str | None:
        return self._focus

    @property
    def dropped(self) -> int:
        """Number of notifications filtered out as belonging to another chat."""
        return self._dropped

    @property
    def history(self) -> list[ChatEvent]:
        return list(self._history)

    def focus(self, chat_id: str | None) -> None:
        """Deliver only notifications for *chat_id* from now on."""
        self._focus = chat_id

    def subscribe(self, handler: Handler, *event_types: EventType) -> None:
        """Register *handler* for *event_types*, or for everything if none given."""
        self._subscriptions.append(_Subscription(handler, frozenset(event_types)))

    def unsubscribe(self, handler: Handler) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.handler != handler]

    async def emit(self, event: ChatEvent) -> bool:
        """Deliver *event*; returns False if it was dropped as out of scope."""
        if "chat_id" in event.data and event.data["chat_id"] != self._focus:
            self._dropped += 1
            _logger.debug(
                "Dropping %s for chat %s (focused on %s)",
                event.type.value, event.data["chat_id"], self._focus,
            )
            return False

        self._history.append(event)
        for sub in list(self._subscriptions):
            if sub.wants(event.type):
                await self._deliver(sub.handler, event)
        return True

    async def publish(self, event_type: EventType, **data: Any) -> bool:
        return await self.emit(ChatEvent(type=event_type, data=data))

    @staticmethod
    async def _deliver(handler: Handler, event: ChatEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "Handler %s raised for %s",
                getattr(handler, "__name__", handler),
                event.type.value,
            )
