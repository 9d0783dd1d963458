"""Retry coordinator: re-run the last send as a fresh or continued stream."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from kariz_chat.core.store import MessageStore
from kariz_chat.types import Attachment, ModelParameters, StreamOutcome

_logger = logging.getLogger(__name__)


class RetryMode(enum.Enum):
    RESTART_FRESH = "restart"  # drop the failed answer, stream a new one
    CONTINUE_LAST = "continue"  # stream again into the failed answer


@dataclass(frozen=True)
class RetryRecord:
    """What was last sent, recorded at send time."""

    prompt: str
    params: ModelParameters
    target_id: str
    attachment: Attachment | None = None


# start_stream(prompt, params, *, continuation_target_id=..., attachment=...)
StartFn = Callable[..., Awaitable["StreamOutcome | None"]]


class RetryCoordinator:
    def __init__(self, store: MessageStore, start: StartFn) -> None:
        self._store = store
        self._start = start
        self._last: RetryRecord | None = None

    @property
    def last(self) -> RetryRecord | None:
        return self._last

    def record(
        self,
        prompt: str,
        params: ModelParameters,
        target_id: str,
        attachment: Attachment | None = None,
    ) -> None:
        self._last = RetryRecord(prompt, params, target_id, attachment)

    def forget(self) -> None:
        self._last = None

    async def retry(
        self, mode: RetryMode = RetryMode.CONTINUE_LAST,
    ) -> StreamOutcome | None:
        """Re-run the recorded send.  No-op (``None``) when nothing is recorded."""
        record = self._last
        if record is None:
            _logger.debug("Retry requested with no recorded send")
            return None

        kwargs: dict[str, Any] = {"attachment": record.attachment}
        if mode is RetryMode.RESTART_FRESH:
            self._store.remove(record.target_id)
        elif record.target_id in self._store:
            kwargs["continuation_target_id"] = record.target_id
        else:
            _logger.info(
                "Retry target %s no longer in store; starting fresh",
                record.target_id,
            )

        _logger.info("Retrying last send (%s)", mode.value)
        return await self._start(record.prompt, record.params, **kwargs)
