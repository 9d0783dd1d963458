"""Shared data types for the Kariz chat client."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any


def new_message_id() -> str:
    """Return a client-side id for an optimistic message."""
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Message types
# ---------------------------------------------------------------------------

class Sender(enum.Enum):
    USER = "user"
    AI = "ai"


class ErrorKind(enum.Enum):
    """User-facing error taxonomy for a failed stream."""

    NETWORK_INTERRUPTED = "network_interrupted"
    SLOW_NETWORK = "slow_network"
    SERVER_ERROR = "server_error"
    NO_CREDIT = "no_credit"
    EMPTY_RESPONSE = "empty_response"

    @property
    def reconcilable(self) -> bool:
        """Whether a background history fetch may repair this failure."""
        return self is not ErrorKind.NO_CREDIT


@dataclass(frozen=True)
class Attachment:
    """File metadata handed from the compose step to ``send``."""

    file_url: str
    file_type: str = ""
    file_name: str = ""
    file_size: int = 0


@dataclass(frozen=True)
class ModelParameters:
    """Model and routing toggles for one request."""

    model_type: str = "GPT-4"
    web_search: bool = False
    reasoning: bool = False


# Fields fixed at creation; MessageStore.patch() rejects them.
IMMUTABLE_FIELDS = frozenset({"id", "sender", "attachment"})


@dataclass(frozen=True)
class Message:
    """One chat turn as rendered by the UI."""

    id: str
    sender: Sender
    text: str = ""
    reasoning_text: str = ""
    is_streaming: bool = False
    is_reasoning_complete: bool = False
    is_error: bool = False
    error_kind: ErrorKind | None = None
    error_type: str | None = None
    remaining_credit: float | None = None
    button_message: str | None = None
    show_recharge_button: bool = False
    model: str | None = None
    web_search: bool = False
    reasoning: bool = False
    attachment: Attachment | None = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def user(
        cls,
        text: str,
        params: ModelParameters | None = None,
        attachment: Attachment | None = None,
    ) -> Message:
        params = params or ModelParameters()
        return cls(
            id=new_message_id(),
            sender=Sender.USER,
            text=text,
            model=params.model_type,
            web_search=params.web_search,
            reasoning=params.reasoning,
            attachment=attachment,
        )

    @classmethod
    def placeholder(cls, model: str | None = None) -> Message:
        """An empty AI message that a stream session will write into."""
        return cls(
            id=new_message_id(),
            sender=Sender.AI,
            is_streaming=True,
            model=model,
        )

    @property
    def is_ai(self) -> bool:
        return self.sender is Sender.AI


# ---------------------------------------------------------------------------
# Stream types
# ---------------------------------------------------------------------------

class FrameKind(enum.Enum):
    CONTENT = "content"
    REASONING = "reasoning"
    ERROR = "error"
    DONE = "done"
    ABORT = "abort"


@dataclass(frozen=True)
class Frame:
    """One decoded event from the response body."""

    kind: FrameKind
    content: str = ""
    message: str = ""
    error_type: str | None = None
    remaining_credit: float | None = None
    button_message: str | None = None
    timed_out: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.kind in (FrameKind.ERROR, FrameKind.DONE, FrameKind.ABORT)


@dataclass(frozen=True)
class StreamRequest:
    """Everything the chat backend needs for one streamed answer."""

    prompt: str
    chat_id: str
    params: ModelParameters = field(default_factory=ModelParameters)
    attachment: Attachment | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "text": self.prompt,
            "chatId": self.chat_id,
            "modelType": self.params.model_type,
            "webSearch": self.params.web_search,
            "reasoning": self.params.reasoning,
        }
        if self.attachment is not None:
            payload["fileUrl"] = self.attachment.file_url
        return payload


class StreamStatus(enum.Enum):
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"
    DISCARDED = "discarded"


@dataclass
class StreamOutcome:
    """Terminal result of a stream session."""

    status: StreamStatus
    message_id: str
    content: str = ""
    reasoning: str = ""
    error_kind: ErrorKind | None = None
    error_message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is StreamStatus.DONE


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Event types published on the EventBus."""

    # Stream lifecycle
    STREAM_STARTED = "stream.started"
    STREAM_REASONING = "stream.reasoning"
    STREAM_CONTENT = "stream.content"
    STREAM_DONE = "stream.done"
    STREAM_ERROR = "stream.error"
    STREAM_CANCELLED = "stream.cancelled"
    STREAM_DISCARDED = "stream.discarded"

    # Reconciliation
    RECONCILE_SCHEDULED = "reconcile.scheduled"
    RECONCILE_APPLIED = "reconcile.applied"
    RECONCILE_FAILED = "reconcile.failed"

    # Conversation
    CHAT_CREATED = "chat.created"
    CHAT_SWITCHED = "chat.switched"
    CHAT_CLEARED = "chat.cleared"
    CHAT_RESET = "chat.reset"
    HISTORY_LOADED = "history.loaded"


@dataclass
class ChatEvent:
    """Event emitted by the chat client via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
