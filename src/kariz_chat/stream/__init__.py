"""Streaming pipeline: frame decoding, sessions, watchdog and identity guard."""

from kariz_chat.stream.decoder import FrameDecoder, decode_stream
from kariz_chat.stream.identity import SessionIdentityGuard, SessionToken
from kariz_chat.stream.session import StreamSession
from kariz_chat.stream.watchdog import StallWatchdog

__all__ = [
    "FrameDecoder",
    "SessionIdentityGuard",
    "SessionToken",
    "StallWatchdog",
    "StreamSession",
    "decode_stream",
]
