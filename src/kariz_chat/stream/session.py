"""Stream session: one in-flight streamed answer.

    open request -> decode frames -> patch target message -> terminal state

A session writes into exactly one target message in the ``MessageStore``.
Before every write it checks its captured ``SessionToken`` against the
``SessionIdentityGuard``; once the token is stale the session stops and its
remaining output is discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

import httpx

from kariz_chat.core.store import MessageStore
from kariz_chat.errors import ChatApiError, default_text, kind_for_error_type
from kariz_chat.events.bus import EventBus
from kariz_chat.stream.decoder import decode_stream
from kariz_chat.stream.identity import SessionIdentityGuard, SessionToken
from kariz_chat.stream.watchdog import StallWatchdog
from kariz_chat.types import (
    ErrorKind,
    EventType,
    Frame,
    FrameKind,
    StreamOutcome,
    StreamRequest,
    StreamStatus,
)

_logger = logging.getLogger(__name__)


class StreamOpener(Protocol):
    """The part of ``ChatApiClient`` a session needs."""

    def open_stream(self, request: StreamRequest) -> Any:
        """Async context manager yielding an async iterator of bytes."""
        ...


class StreamSession:
    """Owns one request, its channel accumulators and its watchdog.

    Parameters
    ----------
    api:
        Anything with an ``open_stream(request)`` async context manager.
    store:
        Message store holding the target message.
    guard:
        Identity guard consulted before every mutation.
    token:
        Identity captured when the session was created.
    target_id:
        Id of the AI message this session writes into.
    request:
        The outbound request.
    bus:
        Optional event bus for per-frame UI notifications.
    stall_timeout:
        Quiet period after which the watchdog fails the session.
    """

    def __init__(
        self,
        api: StreamOpener,
        store: MessageStore,
        guard: SessionIdentityGuard,
        token: SessionToken,
        target_id: str,
        request: StreamRequest,
        bus: EventBus | None = None,
        stall_timeout: float = 15.0,
    ) -> None:
        self._api = api
        self._store = store
        self._guard = guard
        self.token = token
        self.target_id = target_id
        self.request = request
        self._bus = bus
        self._watchdog = StallWatchdog(stall_timeout, self._on_stall)

        self._content = ""
        self._reasoning = ""
        self.last_frame_at: float | None = None

        self._task: asyncio.Task[StreamOutcome] | None = None
        self._cancel_requested = False
        self._stalled = False
        self._finished = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def content(self) -> str:
        return self._content

    @property
    def reasoning(self) -> str:
        return self._reasoning

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self) -> asyncio.Task[StreamOutcome]:
        """Spawn the session task.  A session can be started only once."""
        if self._task is not None:
            raise RuntimeError("StreamSession is single-use")
        self._task = asyncio.create_task(
            self._run(), name=f"stream-{self.target_id[:8]}",
        )
        return self._task

    def cancel(self) -> bool:
        """Abort the transport.  Returns False if there was nothing to abort."""
        if (
            self._task is None
            or self._task.done()
            or self._finished
            or self._cancel_requested
        ):
            return False
        self._cancel_requested = True
        self._watchdog.disarm()
        self._task.cancel()
        return True

    def detach(self) -> None:
        """Release watchdog ownership once this session has been superseded."""
        self._watchdog.disarm()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _run(self) -> StreamOutcome:
        self._watchdog.arm()
        try:
            async with self._api.open_stream(self.request) as chunks:
                async for frame in decode_stream(chunks):
                    if not self._live():
                        return await self._discard()
                    self.last_frame_at = time.monotonic()
                    if frame.is_terminal:
                        self._watchdog.disarm()
                    else:
                        self._watchdog.arm()
                    outcome = await self._apply(frame)
                    if outcome is not None:
                        return outcome
            return await self._finish_eof()
        except asyncio.CancelledError:
            if self._stalled or self._cancel_requested:
                self._uncancel()
                if self._stalled:
                    return await self._fail(ErrorKind.SLOW_NETWORK)
                return await self._finish_cancelled()
            # Cancelled from outside (shutdown): leave the message settled.
            if self._live() and not self._finished:
                self._store.patch(self.target_id, is_streaming=False)
            raise
        except ChatApiError as e:
            return await self._fail(
                e.kind,
                e.message,
                error_type=e.error_type,
                remaining_credit=e.remaining_credit,
                button_message=e.button_message,
            )
        except httpx.TimeoutException as e:
            _logger.warning("Stream request timed out: %s", e)
            return await self._fail(ErrorKind.SLOW_NETWORK)
        except httpx.HTTPError as e:
            _logger.warning("Stream request failed: %s", e)
            return await self._fail(ErrorKind.NETWORK_INTERRUPTED)
        except Exception:
            _logger.exception("Stream session for %s crashed", self.target_id)
            return await self._fail(ErrorKind.SERVER_ERROR)
        finally:
            self._watchdog.disarm()

    async def _apply(self, frame: Frame) -> StreamOutcome | None:
        """Apply one frame; return an outcome if it ended the session."""
        if frame.kind is FrameKind.REASONING:
            self._reasoning += frame.content
            self._store.patch(self.target_id, reasoning_text=self._reasoning)
            await self._publish(EventType.STREAM_REASONING, delta=frame.content)
            return None

        if frame.kind is FrameKind.CONTENT:
            changes: dict[str, Any] = {}
            if not self._content and self._reasoning:
                changes["is_reasoning_complete"] = True
            self._content += frame.content
            changes["text"] = self._content
            self._store.patch(self.target_id, **changes)
            await self._publish(EventType.STREAM_CONTENT, delta=frame.content)
            return None

        if frame.kind is FrameKind.ERROR:
            return await self._fail(
                kind_for_error_type(frame.error_type),
                frame.message,
                error_type=frame.error_type,
                remaining_credit=frame.remaining_credit,
                button_message=frame.button_message,
            )

        if frame.kind is FrameKind.DONE:
            if not self._content:
                return await self._fail(ErrorKind.EMPTY_RESPONSE)
            return await self._finish_done()

        # FrameKind.ABORT
        if self._cancel_requested:
            return await self._finish_cancelled()
        kind = ErrorKind.SLOW_NETWORK if frame.timed_out else ErrorKind.NETWORK_INTERRUPTED
        return await self._fail(kind)

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    async def _finish_done(self) -> StreamOutcome:
        self._finished = True
        if not self._live():
            return await self._discard()
        self._store.patch(
            self.target_id,
            text=self._content,
            is_streaming=False,
            is_reasoning_complete=True,
        )
        await self._publish(EventType.STREAM_DONE, length=len(self._content))
        return self._outcome(StreamStatus.DONE)

    async def _finish_eof(self) -> StreamOutcome:
        if self._content:
            _logger.warning(
                "Stream for %s ended without terminator; keeping %d chars",
                self.target_id, len(self._content),
            )
            return await self._finish_done()
        return await self._fail(ErrorKind.EMPTY_RESPONSE)

    async def _finish_cancelled(self) -> StreamOutcome:
        self._finished = True
        if not self._live():
            return await self._discard()
        self._store.patch(self.target_id, is_streaming=False)
        await self._publish(EventType.STREAM_CANCELLED)
        return self._outcome(StreamStatus.CANCELLED)

    async def _fail(
        self,
        kind: ErrorKind,
        message: str = "",
        *,
        error_type: str | None = None,
        remaining_credit: float | None = None,
        button_message: str | None = None,
    ) -> StreamOutcome:
        self._finished = True
        self._watchdog.disarm()
        if not self._live():
            return await self._discard()

        text = message or default_text(kind)
        # Partial answer stays visible; the error follows it.
        shown = f"{self._content}\n\n{text}" if self._content else text
        self._store.patch(
            self.target_id,
            text=shown,
            is_streaming=False,
            is_error=True,
            is_reasoning_complete=True,
            error_kind=kind,
            error_type=error_type,
            remaining_credit=remaining_credit,
            button_message=button_message,
            show_recharge_button=kind is ErrorKind.NO_CREDIT,
        )
        _logger.info("Stream for %s failed: %s", self.target_id, kind.value)
        await self._publish(
            EventType.STREAM_ERROR,
            kind=kind.value,
            message=text,
            reconcilable=kind.reconcilable,
        )
        outcome = self._outcome(StreamStatus.ERROR)
        outcome.error_kind = kind
        outcome.error_message = text
        return outcome

    async def _discard(self) -> StreamOutcome:
        self._finished = True
        self._watchdog.disarm()
        _logger.debug("Discarding stale stream output for %s", self.target_id)
        await self._publish(EventType.STREAM_DISCARDED)
        return self._outcome(StreamStatus.DISCARDED)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _live(self) -> bool:
        return self._guard.is_current(self.token)

    def _on_stall(self) -> None:
        if self._finished or self._task is None or self._task.done():
            return
        self._stalled = True
        self._task.cancel()

    def _uncancel(self) -> None:
        task = asyncio.current_task()
        if task is not None:
            task.uncancel()

    def _outcome(self, status: StreamStatus) -> StreamOutcome:
        return StreamOutcome(
            status=status,
            message_id=self.target_id,
            content=self._content,
            reasoning=self._reasoning,
        )

    async def _publish(self, event_type: EventType, **data: Any) -> None:
        if self._bus is not None:
            await self._bus.publish(
                event_type,
                message_id=self.target_id,
                chat_id=self.token.chat_id,
                **data,
            )
