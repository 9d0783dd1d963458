"""Frame decoding for the line-delimited ``data:`` event stream.

The chat backend answers with UTF-8 lines of the form::

    data: {"type": "reasoning", "content": "..."}
    data: {"content": "..."}
    data: {"error": "...", "errorType": "no_credit"}
    data: [DONE]

Chunks arrive at arbitrary byte boundaries, so the decoder keeps both an
incremental UTF-8 decoder and a line buffer; only complete lines are parsed.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterable

import httpx

from kariz_chat.errors import coerce_credit
from kariz_chat.types import Frame, FrameKind

_logger = logging.getLogger(__name__)

DATA_MARKER = "data:"
DONE_PAYLOAD = "[DONE]"


def parse_payload(data: Any) -> Frame | None:
    """Turn one parsed JSON payload into a frame, or ``None`` to ignore it."""
    if not isinstance(data, dict):
        return None

    error = data.get("error")
    if error:
        if isinstance(error, dict):
            error = error.get("message")
        message = error if isinstance(error, str) else ""
        return Frame(
            kind=FrameKind.ERROR,
            message=message,
            error_type=data.get("errorType"),
            remaining_credit=coerce_credit(data.get("remainingCredit")),
            button_message=data.get("buttonMessage"),
        )

    content = data.get("content")
    if not isinstance(content, str) or not content:
        return None

    kind = data.get("type")
    if kind == "reasoning":
        return Frame(kind=FrameKind.REASONING, content=content)
    if kind is None or kind == "content":
        return Frame(kind=FrameKind.CONTENT, content=content)
    return None


class FrameDecoder:
    """Incremental, chunk-boundary-invariant decoder.

    ``feed()`` accepts raw bytes and returns the frames completed by them.
    Once the terminator has been seen the decoder is finished and ignores
    further input.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def feed(self, chunk: bytes) -> list[Frame]:
        if self._done:
            return []
        self._buffer += self._utf8.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> list[Frame]:
        """Decode whatever is left once the body has ended."""
        if self._done:
            return []
        self._buffer += self._utf8.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return self._parse_lines([rest]) if rest else []

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _parse_lines(self, lines: list[str]) -> list[Frame]:
        frames: list[Frame] = []
        for line in lines:
            frame = self._parse_line(line.rstrip("\r"))
            if frame is None:
                continue
            frames.append(frame)
            if frame.kind is FrameKind.DONE:
                self._done = True
                break
        return frames

    def _parse_line(self, line: str) -> Frame | None:
        if not line.startswith(DATA_MARKER):
            return None
        payload = line[len(DATA_MARKER):]
        if payload.startswith(" "):
            payload = payload[1:]

        if payload.strip() == DONE_PAYLOAD:
            return Frame(kind=FrameKind.DONE)

        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            _logger.debug("Skipping malformed frame: %r", payload[:200])
            return None
        return parse_payload(data)


async def decode_stream(
    chunks: AsyncIterable[bytes],
) -> AsyncGenerator[Frame, None]:
    """Yield frames decoded from an async byte iterator.

    The sequence ends after a ``done`` frame, when the body ends, or with a
    single ``abort`` frame if the transport fails.  Task cancellation is not
    turned into a frame.
    """
    decoder = FrameDecoder()
    try:
        async for chunk in chunks:
            for frame in decoder.feed(chunk):
                yield frame
            if decoder.done:
                return
    except (httpx.TransportError, httpx.StreamError, OSError) as e:
        _logger.warning("Stream transport failed: %s", e)
        yield Frame(
            kind=FrameKind.ABORT,
            message=str(e),
            timed_out=isinstance(e, httpx.TimeoutException),
        )
        return

    for frame in decoder.flush():
        yield frame
