"""Event bus for UI decoupling."""

from kariz_chat.events.bus import EventBus

__all__ = ["EventBus"]
