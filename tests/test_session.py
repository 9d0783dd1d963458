"""Tests for StreamSession against a scripted backend."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from kariz_chat.core.store import MessageStore
from kariz_chat.errors import (
    GENERIC_ERROR_TEXT,
    NETWORK_INTERRUPTED_TEXT,
    SLOW_NETWORK_TEXT,
)
from kariz_chat.events.bus import EventBus
from kariz_chat.stream.identity import SessionIdentityGuard
from kariz_chat.stream.session import StreamSession
from kariz_chat.types import ErrorKind, EventType, Message, StreamRequest, StreamStatus

from conftest import DONE, frame, wait_for


@pytest.fixture
def store() -> MessageStore:
    return MessageStore()


@pytest.fixture
def guard() -> SessionIdentityGuard:
    return SessionIdentityGuard("c1")


@pytest.fixture
def bus() -> EventBus:
    return EventBus(chat_id="c1")


@pytest.fixture
def make_session(api, store, guard, bus):
    def _make(stall_timeout: float = 1.0, target: Message | None = None) -> StreamSession:
        if target is None:
            target = store.append(Message.placeholder("GPT-4"))
        return StreamSession(
            api,
            store,
            guard,
            guard.capture(),
            target.id,
            StreamRequest("hello", guard.chat_id),
            bus=bus,
            stall_timeout=stall_timeout,
        )

    return _make


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------

class TestCompletion:
    async def test_content_then_done(self, backend, store, make_session):
        backend.queue(frame({"content": "hi"}), DONE)
        session = make_session()
        outcome = await session.start()

        assert outcome.status is StreamStatus.DONE
        assert outcome.ok
        msg = store.get(session.target_id)
        assert msg.text == "hi"
        assert msg.is_streaming is False
        assert msg.is_error is False
        assert backend.stream_requests[0]["chatId"] == "c1"
        assert backend.stream_requests[0]["text"] == "hello"

    async def test_reasoning_then_answer(self, backend, store, make_session):
        backend.queue(
            frame({"type": "reasoning", "content": "thinking..."}),
            frame({"content": "answer"}),
            DONE,
        )
        session = make_session()
        await session.start()

        msg = store.get(session.target_id)
        assert msg.reasoning_text == "thinking..."
        assert msg.is_reasoning_complete is True
        assert msg.text == "answer"

    async def test_reasoning_completes_exactly_once(self, backend, store, make_session):
        backend.queue(
            frame({"type": "reasoning", "content": "r1 "}),
            frame({"type": "reasoning", "content": "r2"}),
            frame({"content": "a"}),
            frame({"type": "reasoning", "content": " r3"}),
            frame({"content": "b"}),
            DONE,
        )
        session = make_session()
        states: list[bool] = []
        store.subscribe(
            lambda change, mid: states.append(store.get(mid).is_reasoning_complete)
            if mid == session.target_id else None
        )
        await session.start()

        flips = sum(1 for a, b in zip(states, states[1:]) if not a and b)
        assert flips == 1
        # reasoning frames: False, False; first content: True
        assert states[:3] == [False, False, True]
        msg = store.get(session.target_id)
        assert msg.reasoning_text == "r1 r2 r3"
        assert msg.text == "ab"

    async def test_content_only_completes_reasoning_at_done(
        self, backend, store, make_session,
    ):
        backend.queue(frame({"content": "x"}), DONE)
        session = make_session()
        states: list[bool] = []
        store.subscribe(lambda change, mid: states.append(store.get(mid).is_reasoning_complete))
        await session.start()
        assert states == [False, True]

    async def test_eof_without_terminator_keeps_content(self, backend, store, make_session):
        backend.queue(frame({"content": "tail"}))
        session = make_session()
        outcome = await session.start()
        assert outcome.status is StreamStatus.DONE
        assert store.get(session.target_id).text == "tail"

    async def test_events_published(self, backend, bus, make_session):
        backend.queue(frame({"content": "a"}), frame({"content": "b"}), DONE)
        session = make_session()
        await session.start()
        types = [e.type for e in bus.history]
        assert types == [
            EventType.STREAM_CONTENT, EventType.STREAM_CONTENT, EventType.STREAM_DONE,
        ]
        assert bus.history[0].data["delta"] == "a"
        assert bus.history[0].data["chat_id"] == "c1"

    async def test_single_use(self, backend, make_session):
        backend.queue(DONE)
        session = make_session()
        task = session.start()
        with pytest.raises(RuntimeError):
            session.start()
        await task


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestErrors:
    async def test_structured_no_credit(self, backend, store, make_session):
        backend.queue(frame({
            "error": "no credit",
            "errorType": "no_credit",
            "remainingCredit": 0,
            "buttonMessage": "شارژ حساب",
        }))
        session = make_session()
        outcome = await session.start()

        assert outcome.status is StreamStatus.ERROR
        assert outcome.error_kind is ErrorKind.NO_CREDIT
        msg = store.get(session.target_id)
        assert msg.is_error is True
        assert msg.text == "no credit"
        assert msg.show_recharge_button is True
        assert msg.remaining_credit == 0.0
        assert msg.button_message == "شارژ حساب"
        assert msg.is_streaming is False

    async def test_error_after_partial_content_is_appended(
        self, backend, store, make_session,
    ):
        backend.queue(frame({"content": "partial"}), frame({"error": "boom"}))
        session = make_session()
        outcome = await session.start()

        assert outcome.error_kind is ErrorKind.SERVER_ERROR
        msg = store.get(session.target_id)
        assert msg.text == "partial\n\nboom"
        assert msg.show_recharge_button is False

    async def test_done_without_content_is_empty_response(
        self, backend, store, make_session,
    ):
        backend.queue(DONE)
        session = make_session()
        outcome = await session.start()
        assert outcome.error_kind is ErrorKind.EMPTY_RESPONSE
        assert store.get(session.target_id).text == GENERIC_ERROR_TEXT

    async def test_transport_error_mid_stream(self, backend, store, make_session):
        backend.queue(frame({"content": "a"}), httpx.ReadError("connection reset"))
        session = make_session()
        outcome = await session.start()
        assert outcome.error_kind is ErrorKind.NETWORK_INTERRUPTED
        assert store.get(session.target_id).text == f"a\n\n{NETWORK_INTERRUPTED_TEXT}"

    async def test_non_2xx_json_body(self, backend, store, make_session):
        backend.streams.append(httpx.Response(
            402, json={"error": "اعتبار کافی نیست", "errorType": "NO_CREDIT"},
        ))
        session = make_session()
        outcome = await session.start()
        assert outcome.error_kind is ErrorKind.NO_CREDIT
        msg = store.get(session.target_id)
        assert msg.text == "اعتبار کافی نیست"
        assert msg.error_type == "NO_CREDIT"

    async def test_non_2xx_plain_body(self, backend, store, make_session):
        backend.streams.append(httpx.Response(502, text="Bad Gateway"))
        session = make_session()
        outcome = await session.start()
        assert outcome.error_kind is ErrorKind.SERVER_ERROR
        assert store.get(session.target_id).text == GENERIC_ERROR_TEXT

    async def test_malformed_frame_does_not_abort(self, backend, store, make_session):
        backend.queue(b"data: {oops\n\n", frame({"content": "fine"}), DONE)
        session = make_session()
        outcome = await session.start()
        assert outcome.ok
        assert store.get(session.target_id).text == "fine"


# ---------------------------------------------------------------------------
# Watchdog and cancellation
# ---------------------------------------------------------------------------

class TestStallAndCancel:
    async def test_stall_after_partial_content(self, backend, store, make_session):
        backend.queue(frame({"content": "a"}), 5.0, DONE)
        session = make_session(stall_timeout=0.05)
        outcome = await asyncio.wait_for(session.start(), timeout=2)

        assert outcome.error_kind is ErrorKind.SLOW_NETWORK
        msg = store.get(session.target_id)
        assert msg.is_error is True
        assert msg.text == f"a\n\n{SLOW_NETWORK_TEXT}"

    async def test_stall_before_first_frame(self, backend, store, make_session):
        backend.queue(5.0, DONE)
        session = make_session(stall_timeout=0.05)
        outcome = await asyncio.wait_for(session.start(), timeout=2)
        assert outcome.error_kind is ErrorKind.SLOW_NETWORK
        assert store.get(session.target_id).text == SLOW_NETWORK_TEXT

    async def test_steady_frames_do_not_stall(self, backend, make_session):
        backend.queue(
            frame({"content": "a"}), 0.03,
            frame({"content": "b"}), 0.03,
            frame({"content": "c"}), DONE,
        )
        session = make_session(stall_timeout=0.08)
        outcome = await session.start()
        assert outcome.ok
        assert outcome.content == "abc"

    async def test_cancel_keeps_partial_state(self, backend, store, bus, make_session):
        gate = asyncio.Event()
        backend.queue(frame({"content": "part"}), gate, DONE)
        got_content = wait_for(bus, EventType.STREAM_CONTENT)
        session = make_session()
        task = session.start()
        await got_content.wait()

        assert session.cancel() is True
        assert session.cancel() is False
        outcome = await task

        assert outcome.status is StreamStatus.CANCELLED
        msg = store.get(session.target_id)
        assert msg.text == "part"
        assert msg.is_streaming is False
        assert msg.is_error is False

    async def test_cancel_after_completion_is_noop(self, backend, store, make_session):
        backend.queue(frame({"content": "hi"}), DONE)
        session = make_session()
        await session.start()
        before = store.get(session.target_id)

        assert session.cancel() is False
        assert store.get(session.target_id) == before

    async def test_cancel_before_start(self, make_session):
        assert make_session().cancel() is False

    async def test_external_cancel_propagates(self, backend, store, bus, make_session):
        gate = asyncio.Event()
        backend.queue(frame({"content": "x"}), gate)
        got_content = wait_for(bus, EventType.STREAM_CONTENT)
        session = make_session()
        task = session.start()
        await got_content.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert store.get(session.target_id).is_streaming is False


# ---------------------------------------------------------------------------
# Identity guard
# ---------------------------------------------------------------------------

class TestIdentity:
    async def test_chat_switch_discards_later_frames(
        self, backend, store, guard, bus, make_session,
    ):
        gate = asyncio.Event()
        backend.queue(
            frame({"content": "c1 answer"}),
            gate,
            frame({"content": " more"}),
            frame({"error": "late"}),
            DONE,
        )
        got_content = wait_for(bus, EventType.STREAM_CONTENT)
        session = make_session()
        task = session.start()
        await got_content.wait()
        snapshot = store.messages

        guard.switch("c2")
        gate.set()
        outcome = await task

        assert outcome.status is StreamStatus.DISCARDED
        assert store.messages == snapshot
        assert EventType.STREAM_DISCARDED in [e.type for e in bus.history]

    async def test_stale_session_does_not_finalize_after_stall(
        self, backend, store, guard, make_session,
    ):
        backend.queue(5.0)
        session = make_session(stall_timeout=0.05)
        task = session.start()
        await asyncio.sleep(0)
        guard.invalidate()
        outcome = await asyncio.wait_for(task, timeout=2)

        assert outcome.status is StreamStatus.DISCARDED
        msg = store.get(session.target_id)
        assert msg.is_error is False
        assert msg.text == ""

    async def test_reset_blocks_writes(self, backend, store, guard, make_session):
        gate = asyncio.Event()
        backend.queue(gate, frame({"content": "x"}), DONE)
        session = make_session()
        task = session.start()
        await asyncio.sleep(0)
        guard.begin_reset()
        gate.set()
        outcome = await task
        guard.end_reset()

        assert outcome.status is StreamStatus.DISCARDED
        assert store.get(session.target_id).text == ""


# ---------------------------------------------------------------------------
# Continuation
# ---------------------------------------------------------------------------

class TestContinuation:
    async def test_new_frames_replace_prior_text(self, backend, store, make_session):
        target = store.append(Message.placeholder("GPT-4"))
        store.patch(
            target.id, text="old answer", reasoning_text="old reasoning",
            is_streaming=True,
        )
        backend.queue(
            frame({"type": "reasoning", "content": "new reasoning"}),
            frame({"content": "new answer"}),
            DONE,
        )
        session = make_session(target=store.get(target.id))
        await session.start()

        msg = store.get(target.id)
        assert msg.text == "new answer"
        assert msg.reasoning_text == "new reasoning"
        assert len(store) == 1

    async def test_old_reasoning_does_not_complete_new_answer(
        self, backend, store, make_session,
    ):
        target = store.append(Message.placeholder("GPT-4"))
        store.patch(target.id, reasoning_text="old reasoning")
        backend.queue(frame({"content": "a"}), DONE)
        session = make_session(target=store.get(target.id))
        states: list[bool] = []
        store.subscribe(lambda change, mid: states.append(store.get(mid).is_reasoning_complete))
        await session.start()

        assert states == [False, True]
