"""Message store, retry coordination and the chat controller."""

from kariz_chat.core.retry import RetryCoordinator, RetryMode, RetryRecord
from kariz_chat.core.store import MessageStore, StoreChange

__all__ = [
    "MessageStore",
    "RetryCoordinator",
    "RetryMode",
    "RetryRecord",
    "StoreChange",
]
