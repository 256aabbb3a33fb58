"""
Stream aggregation: fold provider text deltas into one growing model message.

The fold never mutates a message in place.  Each applied delta produces a new
immutable buffer snapshot in which the in-progress model message (matched by a
per-stream id, not by position) carries the concatenated text so far.

Usage::

    aggregator = StreamAggregator(buffer)
    async for snapshot in aggregator.run(provider.stream(history, system, text)):
        render(snapshot)
    sessions.record_turn(aggregator.messages)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterable, Sequence

from .models import Message, new_id

logger = logging.getLogger("tigra")

__all__ = ["FALLBACK_MESSAGE", "StreamAggregator", "StreamHandle"]

FALLBACK_MESSAGE = (
    "I apologize, but I encountered an issue processing your request. Please try again."
)


class StreamHandle:
    """Ties one in-flight stream to the session it was started for.

    Detaching is a logical cancel: the aggregator stops consuming at its next
    suspension point, closes the provider iterator, and the caller must not
    apply the output to whatever session is active by then.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._detached = False

    @property
    def detached(self) -> bool:
        return self._detached

    def detach(self) -> None:
        if not self._detached:
            logger.debug("[Tigra Stream] Detached stream for session %s", self.session_id)
        self._detached = True

    def __repr__(self) -> str:
        return f"StreamHandle(session_id={self.session_id!r}, detached={self._detached})"


class StreamAggregator:
    """
    Folds deltas into a message buffer.

    Parameters
    ----------
    base:
        Buffer at stream start (history plus the new user message).
    message_id:
        Id for the synthetic model message; generated once per stream.
    handle:
        Optional :class:`StreamHandle` checked between deltas.
    """

    def __init__(
        self,
        base: Sequence[Message],
        *,
        message_id: str | None = None,
        handle: StreamHandle | None = None,
    ) -> None:
        self._base = tuple(base)
        self._message_id = message_id or new_id()
        self._handle = handle
        self._text = ""
        self._reply: Message | None = None
        self._failed = False
        self._error: Message | None = None
        self._finished = False

    @property
    def message_id(self) -> str:
        return self._message_id

    @property
    def text(self) -> str:
        return self._text

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def messages(self) -> tuple[Message, ...]:
        """The current buffer snapshot."""
        buffer = self._base
        if self._reply is not None:
            buffer = (*buffer, self._reply)
        if self._error is not None:
            buffer = (*buffer, self._error)
        return buffer

    def apply(self, delta: str) -> tuple[Message, ...]:
        """Fold one delta. Empty deltas leave the buffer unchanged."""
        if not delta:
            return self.messages
        self._text += delta
        if self._reply is None:
            self._reply = Message.create("model", self._text, message_id=self._message_id)
        else:
            self._reply = self._reply.with_content(self._text)
        return self.messages

    def fail(self, exc: BaseException) -> tuple[Message, ...]:
        """Append the fixed apology after any partial content."""
        logger.error("[Tigra Stream] Provider failure: %s: %s", type(exc).__name__, exc)
        self._failed = True
        self._error = Message.create("model", FALLBACK_MESSAGE)
        return self.messages

    async def run(self, deltas: AsyncIterable[str]) -> AsyncGenerator[tuple[Message, ...], None]:
        """Consume *deltas* in arrival order, yielding a snapshot per applied delta.

        On provider failure a final snapshot with the fallback message is
        yielded instead of raising.
        """
        iterator = deltas.__aiter__()
        try:
            while True:
                if self._handle is not None and self._handle.detached:
                    break
                try:
                    delta = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as exc:
                    yield self.fail(exc)
                    break
                if self._handle is not None and self._handle.detached:
                    break
                if delta:
                    yield self.apply(delta)
        finally:
            self._finished = True
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
