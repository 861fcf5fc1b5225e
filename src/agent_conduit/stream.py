"""Per-prompt output channel.

``prompt()`` returns a ``PromptStream``: the adapter pushes
``UnifiedMessage`` values into it and the caller consumes them with
``async for``. The stream is finite (it ends after ``turn_complete`` or
``error``), can only be consumed once, and settles exactly once. Pushes
after settlement are dropped, so a late backend notification can never
leak into the next turn.

Typical usage::

    stream = await backend.prompt(session_id, "Fix the failing test")
    async for message in stream:
        render(message)
    print(stream.stop_reason)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from agent_conduit.models import ErrorMessage, TurnCompleteMessage, UnifiedMessage

logger = logging.getLogger("agent_conduit.stream")


class PromptStream:
    """Single-consumer stream of unified messages for one prompt.

    Args:
        session_id: Local session id the prompt belongs to.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._queue: asyncio.Queue[UnifiedMessage] = asyncio.Queue()
        self._settled: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._exception: BaseException | None = None
        self._consumed = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    @property
    def done(self) -> bool:
        """True once the turn completed or failed."""
        return self._settled.done()

    def push(self, message: UnifiedMessage) -> bool:
        """Queue a message. Returns False if the stream already settled."""
        if self.done:
            logger.debug("Dropping %s for settled prompt (session=%s)", message.type, self.session_id)
            return False
        self._queue.put_nowait(message)
        return True

    def finish(self, stop_reason: str) -> bool:
        """Complete the turn. Only the first settlement wins."""
        if self.done:
            return False
        self._queue.put_nowait(TurnCompleteMessage(stop_reason=stop_reason))
        self._settled.set_result(stop_reason)
        return True

    def fail(self, exc: BaseException) -> bool:
        """Fail the turn with ``exc``. Only the first settlement wins."""
        if self.done:
            return False
        self._exception = exc
        self._queue.put_nowait(ErrorMessage(message=str(exc) or type(exc).__name__))
        self._settled.set_exception(exc)
        # Callers that only iterate still see the error; don't warn about it.
        self._settled.exception()
        return True

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    @property
    def stop_reason(self) -> str | None:
        """Stop reason of a completed turn, or None."""
        if self.done and self._exception is None:
            return self._settled.result()
        return None

    async def wait(self) -> str:
        """Wait for settlement and return the stop reason (raises if the turn failed)."""
        return await asyncio.shield(self._settled)

    def __aiter__(self) -> AsyncIterator[UnifiedMessage]:
        if self._consumed:
            raise RuntimeError("PromptStream can only be consumed once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[UnifiedMessage]:
        while True:
            message = await self._queue.get()
            yield message
            if message.type == "turn_complete":
                return
            if message.type == "error":
                if self._exception is not None:
                    raise self._exception
                return

    async def collect(self) -> list[UnifiedMessage]:
        """Consume the whole stream into a list."""
        return [message async for message in self]
