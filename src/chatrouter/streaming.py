from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator

import anyio
import httpx

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_END = object()


class StreamRelay:
    """Forward an open upstream response to the client chunk by chunk.

    A producer task drains ``response.aiter_bytes()`` into a bounded queue and
    :meth:`iter_chunks` yields from it. Any ``Content-Encoding`` the provider
    applied is decoded here, because the client response carries only
    :data:`STREAM_HEADERS`. Closing or cancelling the consumer (client
    disconnect) cancels the producer and closes the upstream response. An
    upstream failure ends the stream; once bytes have gone out no status
    change is possible.
    """

    def __init__(
        self, response: httpx.Response, provider_id: str, queue_size: int = 64
    ):
        self.response = response
        self.provider_id = provider_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_size))
        self.bytes_forwarded = 0
        self.chunks_forwarded = 0
        self.error: BaseException | None = None

    async def _produce(self) -> None:
        try:
            async for chunk in self.response.aiter_bytes():
                if chunk:
                    await self._queue.put(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self.error = exc
        await self._queue.put(_END)

    async def _release(self, producer: asyncio.Task) -> None:
        # Runs inside the server's cancelled scope on client disconnect.
        with anyio.CancelScope(shield=True):
            if not producer.done():
                producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
            await self.response.aclose()

    async def iter_chunks(self) -> AsyncGenerator[bytes, None]:
        producer = asyncio.create_task(self._produce())
        try:
            while True:
                item = await self._queue.get()
                if item is _END:
                    break
                self.bytes_forwarded += len(item)
                self.chunks_forwarded += 1
                yield item
            if self.error is not None:
                logger.warning(
                    "[stream] Upstream '%s' failed after %d byte(s); terminating stream: %s",
                    self.provider_id,
                    self.bytes_forwarded,
                    self.error,
                )
        finally:
            await self._release(producer)
