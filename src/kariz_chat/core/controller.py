"""Chat controller: owns the active stream session and hook-level state.

    send -> store append -> StreamSession -> settle -> (reconcile | retry)

The controller exposes explicit commands for everything the UI can trigger
(send, cancel, retry, chat selection, clear, full reset).  It never lets a
network error escape to the caller; failures surface as message state and
the ``streaming_error`` flag.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from kariz_chat.api.client import ChatApiClient
from kariz_chat.config import ClientConfig
from kariz_chat.core.retry import RetryCoordinator, RetryMode
from kariz_chat.core.store import MessageStore
from kariz_chat.errors import GENERIC_ERROR_TEXT, ChatClientError
from kariz_chat.events.bus import EventBus
from kariz_chat.stream.identity import SessionIdentityGuard, SessionToken
from kariz_chat.stream.session import StreamSession
from kariz_chat.types import (
    Attachment,
    ErrorKind,
    EventType,
    Message,
    ModelParameters,
    Sender,
    StreamOutcome,
    StreamRequest,
    StreamStatus,
    new_message_id,
)

_logger = logging.getLogger(__name__)


class ChatController:
    """Async owner of one conversation view.

    Parameters
    ----------
    api:
        Backend client (streaming, chat creation, history).
    config:
        Client configuration; only ``config.stream`` is read here.
    bus:
        Event bus for UI notifications (optional).
    store:
        Message store (optional; a fresh one is created otherwise).
    chat_id:
        Conversation to start in, or ``None`` for a new chat.
    """

    def __init__(
        self,
        api: ChatApiClient,
        config: ClientConfig | None = None,
        bus: EventBus | None = None,
        store: MessageStore | None = None,
        chat_id: str | None = None,
    ) -> None:
        self._api = api
        self._config = config or ClientConfig()
        self.bus = bus or EventBus()
        self.bus.focus(chat_id)
        self.store = store or MessageStore()
        self.guard = SessionIdentityGuard(chat_id)
        self.retry_coordinator = RetryCoordinator(self.store, self.start_stream)

        self.is_streaming = False
        self.streaming_error: str | None = None

        self._session: StreamSession | None = None
        self._background: set[asyncio.Task[None]] = set()

    @property
    def chat_id(self) -> str | None:
        return self.guard.chat_id

    @property
    def session(self) -> StreamSession | None:
        return self._session

    def default_params(self) -> ModelParameters:
        s = self._config.stream
        return ModelParameters(
            model_type=s.default_model,
            web_search=s.web_search,
            reasoning=s.reasoning,
        )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self,
        text: str,
        params: ModelParameters | None = None,
        attachment: Attachment | None = None,
    ) -> StreamOutcome | None:
        """Append the user's message and stream the answer.

        Creates the conversation first when there is none yet.  Returns the
        stream outcome, or ``None`` if nothing was streamed.
        """
        if not text or not text.strip():
            return None
        params = params or self.default_params()

        if self.guard.chat_id is None:
            try:
                chat_id = await self._api.create_chat()
            except (ChatClientError, httpx.HTTPError) as e:
                _logger.error("Could not create chat: %s", e)
                self.store.append(Message.user(text, params, attachment))
                self.store.append(Message(
                    id=new_message_id(),
                    sender=Sender.AI,
                    text=GENERIC_ERROR_TEXT,
                    is_error=True,
                    error_kind=ErrorKind.SERVER_ERROR,
                    is_reasoning_complete=True,
                ))
                return None
            self._switch_chat(chat_id)
            await self.bus.publish(EventType.CHAT_CREATED, chat_id=chat_id)

        self.store.append(Message.user(text, params, attachment))
        return await self.start_stream(text, params, attachment=attachment)

    async def select_suggested_answer(
        self, text: str, params: ModelParameters | None = None,
    ) -> StreamOutcome | None:
        """A suggested prompt picked by the user is sent like typed text."""
        return await self.send(text, params)

    async def start_stream(
        self,
        prompt: str,
        params: ModelParameters | None = None,
        *,
        continuation_target_id: str | None = None,
        attachment: Attachment | None = None,
    ) -> StreamOutcome | None:
        """Stream an answer for *prompt* into a new or existing AI message."""
        if not prompt or not prompt.strip():
            raise ValueError("prompt must not be empty")
        chat_id = self.guard.chat_id
        if chat_id is None:
            _logger.warning("Streaming blocked: no active chat")
            return None
        params = params or self.default_params()

        target = (
            self.store.get(continuation_target_id)
            if continuation_target_id is not None else None
        )
        previous = self._session
        if target is None or (previous is not None and not previous.done):
            self._supersede_previous()
        if target is not None:
            self.store.patch(
                target.id,
                is_streaming=True,
                is_error=False,
                is_reasoning_complete=False,
                error_kind=None,
                error_type=None,
                remaining_credit=None,
                button_message=None,
                show_recharge_button=False,
            )
        else:
            target = self.store.append(Message.placeholder(params.model_type))

        token = self.guard.capture()
        self.retry_coordinator.record(prompt, params, target.id, attachment)
        self.is_streaming = True
        self.streaming_error = None

        session = StreamSession(
            self._api,
            self.store,
            self.guard,
            token,
            target.id,
            StreamRequest(prompt, chat_id, params, attachment),
            bus=self.bus,
            stall_timeout=self._config.stream.stall_timeout,
        )
        self._session = session
        await self.bus.publish(
            EventType.STREAM_STARTED,
            message_id=target.id,
            chat_id=chat_id,
            continuation=continuation_target_id is not None,
        )
        outcome = await session.start()
        await self._settle(session, outcome)
        return outcome

    async def retry(
        self, mode: RetryMode = RetryMode.CONTINUE_LAST,
    ) -> StreamOutcome | None:
        return await self.retry_coordinator.retry(mode)

    def cancel(self) -> bool:
        """Abort the in-flight stream.  Without one this changes nothing."""
        session = self._session
        aborted = session.cancel() if session is not None else False
        if aborted and not self.guard.resetting:
            self.is_streaming = False
            self.streaming_error = None
        return aborted

    # ------------------------------------------------------------------
    # Conversation switching
    # ------------------------------------------------------------------

    async def select_chat(self, chat_id: str) -> None:
        """Open *chat_id*, hydrating its messages from history."""
        if chat_id == self.guard.chat_id and len(self.store):
            return
        self.cancel()
        self._switch_chat(chat_id)
        self.store.clear()
        self.retry_coordinator.forget()
        self.is_streaming = False
        self.streaming_error = None
        await self.bus.publish(EventType.CHAT_SWITCHED, chat_id=chat_id)
        await self.load_history(chat_id)

    async def load_history(self, chat_id: str) -> bool:
        """Hydrate the (empty) store from the history endpoint."""
        if len(self.store):
            return False
        try:
            messages = await self._api.fetch_history(chat_id)
        except (ChatClientError, httpx.HTTPError) as e:
            _logger.error("Could not load history for %s: %s", chat_id, e)
            return False
        if self.guard.chat_id != chat_id or self.guard.resetting or len(self.store):
            return False
        self.store.replace_all(messages)
        await self.bus.publish(
            EventType.HISTORY_LOADED, chat_id=chat_id, count=len(messages),
        )
        return True

    async def clear_chat(self) -> None:
        """Manual clear: start over with a new, not yet created chat."""
        self.cancel()
        self._switch_chat(None)
        self.store.clear()
        self.retry_coordinator.forget()
        self.is_streaming = False
        self.streaming_error = None
        await self.bus.publish(EventType.CHAT_CLEARED)

    async def reset_completely(self) -> None:
        """Drop every piece of conversation state, suppressing late writes."""
        self.guard.begin_reset()
        try:
            self.cancel()
            self._cancel_background()
            self.store.clear()
            self.retry_coordinator.forget()
            self._switch_chat(None)
            await self.bus.publish(EventType.CHAT_RESET)
        finally:
            self.guard.end_reset()
            self.is_streaming = False
            self.streaming_error = None

    async def close(self) -> None:
        self.cancel()
        self._cancel_background()
        await self._api.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _switch_chat(self, chat_id: str | None) -> None:
        self.guard.switch(chat_id)
        self.bus.focus(chat_id)

    def _supersede_previous(self) -> None:
        """Invalidate earlier sessions and release their message."""
        self.guard.invalidate()
        if self._session is not None:
            self._session.detach()
            self._session = None
        for msg in self.store.streaming():
            self.store.patch(msg.id, is_streaming=False)

    async def _settle(self, session: StreamSession, outcome: StreamOutcome) -> None:
        if self._session is session:
            self._session = None
        if outcome.status is StreamStatus.DISCARDED:
            return
        if not self.guard.is_current(session.token):
            return

        self.is_streaming = False
        if outcome.status is StreamStatus.ERROR:
            self.streaming_error = outcome.error_message
            if outcome.error_kind is not None and outcome.error_kind.reconcilable:
                await self._schedule_reconciliation(
                    session.token, outcome.message_id, session.request.prompt,
                )

    async def _schedule_reconciliation(
        self, token: SessionToken, message_id: str, prompt: str,
    ) -> None:
        task = asyncio.create_task(
            self._reconcile(token, message_id, prompt),
            name=f"reconcile-{message_id[:8]}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        await self.bus.publish(
            EventType.RECONCILE_SCHEDULED,
            message_id=message_id,
            chat_id=token.chat_id,
            delay=self._config.stream.reconcile_delay,
        )

    async def _reconcile(
        self, token: SessionToken, message_id: str, prompt: str,
    ) -> None:
        """Replace a failed answer with the server's copy, if it has one."""
        await asyncio.sleep(self._config.stream.reconcile_delay)
        if not self.guard.same_chat(token) or token.chat_id is None:
            return
        try:
            history = await self._api.fetch_history(token.chat_id)
        except (ChatClientError, httpx.HTTPError) as e:
            _logger.warning("Reconciliation for %s failed: %s", message_id, e)
            await self.bus.publish(
                EventType.RECONCILE_FAILED,
                message_id=message_id,
                chat_id=token.chat_id,
                error=str(e),
            )
            return

        if not self.guard.same_chat(token):
            return
        current = self.store.get(message_id)
        if current is None or not current.is_error or current.is_streaming:
            return
        answer = find_answer(history, prompt, self._answers_before(message_id))
        if answer is None:
            _logger.debug("No saved answer for %s yet", message_id)
            return

        self.store.patch(
            message_id,
            text=answer.text,
            reasoning_text=answer.reasoning_text or current.reasoning_text,
            is_reasoning_complete=True,
            is_error=False,
            error_kind=None,
            error_type=None,
            show_recharge_button=False,
        )
        last = self.retry_coordinator.last
        if last is not None and last.target_id == message_id:
            self.streaming_error = None
        _logger.info("Reconciled message %s from history", message_id)
        await self.bus.publish(
            EventType.RECONCILE_APPLIED, message_id=message_id, chat_id=token.chat_id,
        )

    def _answers_before(self, message_id: str) -> int:
        """Count the answered AI turns shown above *message_id*."""
        count = 0
        for msg in self.store.messages:
            if msg.id == message_id:
                break
            if msg.is_ai and not msg.is_error:
                count += 1
        return count

    def _cancel_background(self) -> None:
        for task in list(self._background):
            task.cancel()
        self._background.clear()


def find_answer(
    history: list[Message], prompt: str, skip: int = 0,
) -> Message | None:
    """Return the saved answer to *prompt* from a chat's history.

    Only an AI row directly following a user row with the same text counts,
    and the first *skip* AI rows are turns the client already shows.  The
    latest matching row wins.
    """
    found: Message | None = None
    ai_rows = 0
    previous: Message | None = None
    for row in history:
        if row.is_ai:
            if (
                ai_rows >= skip
                and row.text
                and previous is not None
                and previous.sender is Sender.USER
                and previous.text == prompt
            ):
                found = row
            ai_rows += 1
        previous = row
    return found
