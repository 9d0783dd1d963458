"""Shared fixtures: a scripted chat backend behind ``httpx.MockTransport``."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from kariz_chat.api.client import ChatApiClient
from kariz_chat.config import ApiConfig, ClientConfig, StreamConfig
from kariz_chat.core.controller import ChatController
from kariz_chat.events.bus import EventBus
from kariz_chat.types import ChatEvent, EventType


def frame(payload: Any) -> bytes:
    """One ``data:`` line; strings are sent verbatim (e.g. ``[DONE]``)."""
    body = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {body}\n\n".encode("utf-8")


DONE = frame("[DONE]")


async def _body(items: list[Any]):
    """Async byte body.  Floats sleep, Events gate, exceptions are raised."""
    for item in items:
        if isinstance(item, (int, float)):
            await asyncio.sleep(item)
        elif isinstance(item, asyncio.Event):
            await item.wait()
        elif isinstance(item, BaseException):
            raise item
        else:
            yield item


class ScriptedBackend:
    """Serves queued stream scripts plus chat creation and history."""

    def __init__(self) -> None:
        self.streams: list[list[Any] | httpx.Response] = []
        self.history: dict[str, list[dict[str, Any]]] = {}
        self.history_calls: list[str] = []
        self.stream_requests: list[dict[str, Any]] = []
        self.created_chat_id = "c-new"
        self.create_status = 200

    def queue(self, *items: Any) -> None:
        self.streams.append(list(items))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/chat/stream":
            self.stream_requests.append(json.loads(request.content))
            script = self.streams.pop(0)
            if isinstance(script, httpx.Response):
                return script
            return httpx.Response(
                200,
                content=_body(script),
                headers={"content-type": "text/event-stream"},
            )
        if path == "/createChat":
            if self.create_status != 200:
                return httpx.Response(self.create_status, json={"error": "nope"})
            return httpx.Response(200, json={"chat": self.created_chat_id})
        if path == "/chatHistory":
            chat_id = request.url.params["chatCode"]
            self.history_calls.append(chat_id)
            return httpx.Response(200, json={"chatHistory": self.history.get(chat_id, [])})
        return httpx.Response(404, json={"error": "not found"})


def wait_for(bus: EventBus, event_type: EventType) -> asyncio.Event:
    """Return an Event set the first time *event_type* is published."""
    seen = asyncio.Event()

    def _on(event: ChatEvent) -> None:
        seen.set()

    bus.subscribe(_on, event_type)
    return seen


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(
        api=ApiConfig(base_url="http://test", access_token="tok", user_id="u1"),
        stream=StreamConfig(stall_timeout=1.0, reconcile_delay=0),
    )


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
async def api(config: ClientConfig, backend: ScriptedBackend):
    client = ChatApiClient(config.api, transport=httpx.MockTransport(backend.handler))
    yield client
    await client.close()


@pytest.fixture
async def controller(api: ChatApiClient, config: ClientConfig):
    ctl = ChatController(api, config, chat_id="c1")
    yield ctl
    ctl.cancel()
    ctl._cancel_background()
