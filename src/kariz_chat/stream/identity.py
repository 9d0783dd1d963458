"""Session identity guard.

Late callbacks from a stream that belongs to a previous conversation (or to
a superseded send in the same conversation) must not touch current state.
Each session captures a :class:`SessionToken` when it starts and checks it
against the guard before every mutation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionToken:
    """Identity captured by a stream session at creation time."""

    chat_id: str | None
    generation: int


class SessionIdentityGuard:
    """Tracks the active chat identity and a generation counter.

    The generation is bumped whenever prior sessions must stop writing:
    chat switches, clears, resets and new (non-continuation) sends.
    """

    def __init__(self, chat_id: str | None = None) -> None:
        self._chat_id = chat_id
        self._generation = 0
        self._resetting = False

    @property
    def chat_id(self) -> str | None:
        return self._chat_id

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def resetting(self) -> bool:
        return self._resetting

    def capture(self) -> SessionToken:
        return SessionToken(self._chat_id, self._generation)

    def is_current(self, token: SessionToken) -> bool:
        """True if a session holding *token* may still mutate state."""
        return (
            not self._resetting
            and token.chat_id == self._chat_id
            and token.generation == self._generation
        )

    def same_chat(self, token: SessionToken) -> bool:
        """Looser check: the conversation is still open, any generation."""
        return not self._resetting and token.chat_id == self._chat_id

    def invalidate(self) -> int:
        """Make every previously captured token stale."""
        self._generation += 1
        return self._generation

    def switch(self, chat_id: str | None) -> None:
        if chat_id != self._chat_id:
            _logger.debug("Chat identity %s -> %s", self._chat_id, chat_id)
        self._chat_id = chat_id
        self.invalidate()

    def begin_reset(self) -> None:
        self._resetting = True
        self.invalidate()

    def end_reset(self) -> None:
        self._resetting = False
