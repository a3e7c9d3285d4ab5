from __future__ import annotations

import logging
from typing import AsyncIterator

import anyio
from anyio.streams.memory import (
    MemoryObjectReceiveStream,
    MemoryObjectSendStream,
)

from checkin.app.events.models import VerificationEvent, VerificationEventType
from checkin.app.events.emitter import VerificationEventEmitter

logger = logging.getLogger(__name__)


class MemoryQueueEventEmitter(VerificationEventEmitter):
    """
    In-memory async event emitter suitable for SSE streaming.

    Properties:
    - single-consumer
    - non-blocking for the verification path
    - deterministic ordering
    - terminates cleanly once the scan completes
    """

    def __init__(self, max_buffer: int = 256) -> None:
        self._send: MemoryObjectSendStream[VerificationEvent]
        self._receive: MemoryObjectReceiveStream[VerificationEvent]
        self._send, self._receive = anyio.create_memory_object_stream(
            max_buffer
        )
        self._closed = False

    async def emit(self, event: VerificationEvent) -> None:
        if self._closed:
            return

        try:
            self._send.send_nowait(event)
        except (anyio.WouldBlock, anyio.BrokenResourceError):
            # Fail-safe: never let observability break verification
            logger.warning(
                "event_dropped",
                extra={"event_type": event.event_type.value},
            )
            return

        if event.event_type is VerificationEventType.SCAN_COMPLETED:
            await self.close()

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._send.aclose()

    async def stream(self) -> AsyncIterator[VerificationEvent]:
        """
        Async generator yielding emitted events in order.
        """
        async with self._receive:
            async for event in self._receive:
                yield event
