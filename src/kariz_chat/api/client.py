"""Async HTTP client for the Kariz chat backend.

Covers the three collaborators the streaming core talks to: the streaming
answer endpoint, chat creation and chat history.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator

import httpx

from kariz_chat.config import ApiConfig
from kariz_chat.errors import ChatApiError, ChatClientError, UnexpectedResponseError
from kariz_chat.types import Message, Sender, StreamRequest

_logger = logging.getLogger(__name__)

# Retry configuration (non-streaming calls only)
_MAX_RETRIES = 3
_BACKOFF_BASE = 1  # seconds -- exponential: 1, 2, 4
_RETRY_STATUSES = (429, 500, 502, 503, 504)


def history_row_to_message(row: dict[str, Any]) -> Message:
    """Map one ``chatHistory`` row onto a finished ``Message``."""
    sender = Sender.AI if row.get("sender") == "ai" else Sender.USER
    reason = row.get("reason") or ""
    return Message(
        id=str(row.get("ID", row.get("id", ""))),
        sender=sender,
        text=row.get("text") or "",
        reasoning_text=reason,
        is_reasoning_complete=True,
        is_streaming=False,
        is_error=False,
        model=row.get("model") or ("GPT-4" if sender is Sender.AI else None),
    )


class ChatApiClient:
    """Thin async wrapper around ``httpx.AsyncClient``."""

    def __init__(
        self,
        config: ApiConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        headers = {"Content-Type": "application/json"}
        if config.access_token:
            headers["Authorization"] = f"Bearer {config.access_token}"

        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=httpx.Timeout(
                config.timeout,
                connect=config.connect_timeout,
                read=config.read_timeout,
            ),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Streaming answer
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def open_stream(
        self, request: StreamRequest,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open the answer stream and yield its raw byte iterator.

        Raises ``ChatApiError`` for a non-success status; the connection is
        closed when the context exits.
        """
        async with self._client.stream(
            "POST",
            self.config.stream_path,
            json=request.to_payload(),
            headers={"Accept": "text/event-stream"},
        ) as resp:
            if resp.is_error:
                body = await resp.aread()
                _logger.warning(
                    "Stream endpoint returned %d for chat %s",
                    resp.status_code, request.chat_id,
                )
                raise ChatApiError.from_body(resp.status_code, body)
            yield resp.aiter_bytes()

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    async def create_chat(self) -> str:
        """Create a conversation and return its identifier."""
        data = await self._request_json(
            "POST", self.config.create_chat_path,
            json={"userID": self.config.user_id},
        )
        chat_id = data.get("chat") if isinstance(data, dict) else None
        if not isinstance(chat_id, str) or not chat_id:
            raise UnexpectedResponseError(f"createChat returned no chat id: {data!r}")
        _logger.info("Created chat %s", chat_id)
        return chat_id

    async def fetch_history(self, chat_id: str) -> list[Message]:
        """Load a conversation's messages, oldest first."""
        data = await self._request_json(
            "GET", self.config.history_path,
            params={
                "chatCode": chat_id,
                "limit": self.config.history_limit,
                "order": "asc",
            },
        )
        rows = data.get("chatHistory") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise UnexpectedResponseError(f"chatHistory missing for chat {chat_id}")
        return [history_row_to_message(r) for r in rows if isinstance(r, dict)]

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        """Send a request, retrying 429/5xx and timeouts with backoff."""
        last_error: Exception | None = None

        for attempt in range(_MAX_RETRIES):
            try:
                resp = await self._client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                last_error = e
                _logger.warning(
                    "%s %s timed out (attempt %d/%d): %s",
                    method, url, attempt + 1, _MAX_RETRIES, e,
                )
                await asyncio.sleep(_BACKOFF_BASE * (2 ** attempt))
                continue

            if resp.status_code in _RETRY_STATUSES:
                last_error = ChatApiError.from_body(resp.status_code, resp.content)
                _logger.warning(
                    "%s %s returned %d (attempt %d/%d), retrying...",
                    method, url, resp.status_code, attempt + 1, _MAX_RETRIES,
                )
                await asyncio.sleep(_BACKOFF_BASE * (2 ** attempt))
                continue
            if resp.is_error:
                raise ChatApiError.from_body(resp.status_code, resp.content)
            try:
                return resp.json()
            except ValueError as e:
                raise UnexpectedResponseError(f"{method} {url}: invalid JSON") from e
        else:
            raise last_error or ChatClientError(f"{method} {url}: retries exhausted")
