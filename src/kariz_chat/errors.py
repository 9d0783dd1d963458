"""Exceptions and user-facing error texts."""

from __future__ import annotations

import json
from typing import Any

from kariz_chat.types import ErrorKind

# User-facing texts (Persian UI)
GENERIC_ERROR_TEXT = "متاسفانه خطایی رخ داد. لطفا دوباره تلاش کنید."
NETWORK_INTERRUPTED_TEXT = "ارتباط با سرور قطع شد. لطفا اتصال اینترنت خود را بررسی کنید."
SLOW_NETWORK_TEXT = "سرعت اینترنت شما پایین است و پاسخ به موقع دریافت نشد. لطفا دوباره تلاش کنید."
NO_CREDIT_TEXT = "اعتبار شما به پایان رسیده است. برای ادامه مکالمه باید حساب خود را شارژ کنید."

_DEFAULT_TEXTS = {
    ErrorKind.NETWORK_INTERRUPTED: NETWORK_INTERRUPTED_TEXT,
    ErrorKind.SLOW_NETWORK: SLOW_NETWORK_TEXT,
    ErrorKind.SERVER_ERROR: GENERIC_ERROR_TEXT,
    ErrorKind.NO_CREDIT: NO_CREDIT_TEXT,
    ErrorKind.EMPTY_RESPONSE: GENERIC_ERROR_TEXT,
}

NO_CREDIT_TYPES = frozenset({"no_credit", "NO_CREDIT", "credit_error"})


def default_text(kind: ErrorKind) -> str:
    """Fallback message for *kind* when the server supplied none."""
    return _DEFAULT_TEXTS[kind]


def kind_for_error_type(error_type: str | None) -> ErrorKind:
    """Map a server ``errorType`` tag onto the client taxonomy."""
    if error_type in NO_CREDIT_TYPES:
        return ErrorKind.NO_CREDIT
    return ErrorKind.SERVER_ERROR


def coerce_credit(value: Any) -> float | None:
    """Parse a ``remainingCredit`` value; ``None`` when absent or garbage."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


class ChatClientError(Exception):
    """Base class for errors raised by the chat client."""


class ChatApiError(ChatClientError):
    """The chat backend answered with a non-success status.

    Carries the structured fields the server puts in its JSON error body so
    that a failed request can be rendered like an in-stream error frame.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        error_type: str | None = None,
        remaining_credit: float | None = None,
        button_message: str | None = None,
    ) -> None:
        super().__init__(message or f"HTTP {status}")
        self.message = message
        self.status = status
        self.error_type = error_type
        self.remaining_credit = remaining_credit
        self.button_message = button_message

    @property
    def kind(self) -> ErrorKind:
        return kind_for_error_type(self.error_type)

    @classmethod
    def from_body(cls, status: int, body: bytes | str) -> ChatApiError:
        """Build from an HTTP error body, tolerating non-JSON bodies."""
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="replace")
        try:
            data = json.loads(body) if body else {}
        except json.JSONDecodeError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        message = error or data.get("message") or ""
        if not isinstance(message, str):
            message = str(message)
        return cls(
            message,
            status=status,
            error_type=data.get("errorType"),
            remaining_credit=coerce_credit(data.get("remainingCredit")),
            button_message=data.get("buttonMessage"),
        )


class UnexpectedResponseError(ChatClientError):
    """A collaborator endpoint returned a body of the wrong shape."""
