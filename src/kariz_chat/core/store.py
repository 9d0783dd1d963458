"""Ordered in-memory message store rendered by the UI."""

from __future__ import annotations

import dataclasses
import enum
import logging
from typing import Any, Callable, Iterable

from kariz_chat.types import IMMUTABLE_FIELDS, Message, Sender

_logger = logging.getLogger(__name__)


class StoreChange(enum.Enum):
    APPENDED = "appended"
    PATCHED = "patched"
    REMOVED = "removed"
    REPLACED = "replaced"
    CLEARED = "cleared"


# Observer signature: (change, message_id or None for bulk changes)
Observer = Callable[[StoreChange, "str | None"], None]

_FIELD_NAMES = frozenset(f.name for f in dataclasses.fields(Message))


class MessageStore:
    """Synchronous ordered list of messages keyed by id.

    Messages are immutable; every mutation swaps in a new ``Message``.
    Observers are called synchronously after each change.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = []
        self._index: dict[str, int] = {}
        self._observers: list[Observer] = []
        self._load(messages)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._index

    def get(self, message_id: str) -> Message | None:
        idx = self._index.get(message_id)
        return self._messages[idx] if idx is not None else None

    def last(self, sender: Sender | None = None) -> Message | None:
        for msg in reversed(self._messages):
            if sender is None or msg.sender is sender:
                return msg
        return None

    def streaming(self) -> list[Message]:
        return [m for m in self._messages if m.is_streaming]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append(self, message: Message) -> Message:
        if message.id in self._index:
            raise ValueError(f"Duplicate message id: {message.id}")
        self._index[message.id] = len(self._messages)
        self._messages.append(message)
        self._notify(StoreChange.APPENDED, message.id)
        return message

    def patch(self, message_id: str, **changes: Any) -> Message | None:
        """Merge *changes* into the message; ``None`` if the id is unknown."""
        frozen = IMMUTABLE_FIELDS.intersection(changes)
        if frozen:
            raise ValueError(f"Cannot patch immutable fields: {sorted(frozen)}")
        unknown = set(changes) - _FIELD_NAMES
        if unknown:
            raise TypeError(f"Unknown message fields: {sorted(unknown)}")

        idx = self._index.get(message_id)
        if idx is None:
            _logger.debug("Patch for unknown message %s ignored", message_id)
            return None
        updated = dataclasses.replace(self._messages[idx], **changes)
        self._messages[idx] = updated
        self._notify(StoreChange.PATCHED, message_id)
        return updated

    def remove(self, message_id: str) -> bool:
        idx = self._index.get(message_id)
        if idx is None:
            return False
        del self._messages[idx]
        self._reindex()
        self._notify(StoreChange.REMOVED, message_id)
        return True

    def replace_all(self, messages: Iterable[Message]) -> None:
        """Bulk replace, used when hydrating history."""
        self._load(messages)
        self._notify(StoreChange.REPLACED, None)

    def clear(self) -> None:
        self._messages.clear()
        self._index.clear()
        self._notify(StoreChange.CLEARED, None)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: Observer) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, messages: Iterable[Message]) -> None:
        loaded = list(messages)
        ids = [m.id for m in loaded]
        if len(set(ids)) != len(ids):
            raise ValueError("Duplicate message ids in bulk load")
        self._messages = loaded
        self._reindex()

    def _reindex(self) -> None:
        self._index = {m.id: i for i, m in enumerate(self._messages)}

    def _notify(self, change: StoreChange, message_id: str | None) -> None:
        for observer in list(self._observers):
            try:
                observer(change, message_id)
            except Exception:
                _logger.exception("Store observer %r raised on %s", observer, change)
