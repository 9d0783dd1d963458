"""HTTP collaborators of the streaming core."""

from kariz_chat.api.client import ChatApiClient, history_row_to_message

__all__ = ["ChatApiClient", "history_row_to_message"]
