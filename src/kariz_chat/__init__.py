"""Kariz chat client: incremental streaming of AI chat responses."""

from kariz_chat.config import ClientConfig, load_config
from kariz_chat.core.controller import ChatController
from kariz_chat.core.retry import RetryMode
from kariz_chat.types import Attachment, Message, ModelParameters

__all__ = [
    "Attachment",
    "ChatController",
    "ClientConfig",
    "Message",
    "ModelParameters",
    "RetryMode",
    "load_config",
]
