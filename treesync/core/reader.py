"""Async stream reader: pulls chunks from a transport into a session."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Optional, Union

from treesync.core.session import StreamSession
from treesync.protocol.events import StreamEvent

logger = logging.getLogger(__name__)


class StreamIdleTimeout(Exception):
    """Raised when no chunk arrives within the idle timeout.

    The session is left open; call ``session.finish()`` to get an
    ``incomplete`` outcome and decide whether to reconnect.
    """

    def __init__(self, timeout: float) -> None:
        super().__init__(f"No stream data received for {timeout:g}s")
        self.timeout = timeout


async def read_stream(
    chunks: AsyncIterable[Union[str, bytes]],
    session: StreamSession,
    *,
    idle_timeout: Optional[float] = None,
) -> AsyncIterator[StreamEvent]:
    """Feed ``chunks`` through ``session`` and yield every dispatched event.

    When the source is exhausted the carry-over line is drained too.  The
    caller still owns ``session.finish()``.
    """
    timeout = session.settings.idle_timeout_seconds if idle_timeout is None else idle_timeout
    iterator = chunks.__aiter__()
    while True:
        try:
            chunk = await asyncio.wait_for(iterator.__anext__(), timeout)
        except StopAsyncIteration:
            break
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Stream idle for {timeout:g}s; giving up")
            raise StreamIdleTimeout(timeout) from None
        for event in session.process_chunk(chunk):
            yield event
    for event in session.drain():
        yield event
