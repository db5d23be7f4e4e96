from __future__ import annotations

import math

import anyio

from .errors import ClosedError
from .schemas.claude import OutboundUserMessage


class InputChannel:
    """Unbounded FIFO of user turns waiting to be written to the agent.

    ``push`` never blocks. Closing ends iteration once queued turns are drained.
    """

    def __init__(self) -> None:
        self._send, self._receive = anyio.create_memory_object_stream[OutboundUserMessage](
            math.inf
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, message: OutboundUserMessage) -> None:
        if self._closed:
            raise ClosedError("input channel is closed")
        self._send.send_nowait(message)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._send.close()

    def discard(self) -> None:
        """Close and drop anything still queued."""
        self.close()
        self._receive.close()

    async def receive(self) -> OutboundUserMessage:
        return await self._receive.receive()

    def __aiter__(self) -> InputChannel:
        return self

    async def __anext__(self) -> OutboundUserMessage:
        try:
            return await self._receive.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            raise StopAsyncIteration from None
