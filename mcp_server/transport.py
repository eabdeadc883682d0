"""Transport handles owned by pool connections."""
from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Mapping, Optional, Tuple

from loguru import logger

from core.pool import ClientInfo

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def is_valid_sse_request(headers: Mapping[str, str]) -> bool:
    """An SSE handshake must negotiate text/event-stream or ask for no-cache."""
    accept = headers.get("accept", "").lower()
    cache_control = headers.get("cache-control", "").lower()
    return "text/event-stream" in accept or "no-cache" in cache_control


def client_info_from_headers(headers: Mapping[str, str]) -> ClientInfo:
    return ClientInfo(
        name=headers.get("user-agent") or "unknown",
        version=headers.get("x-mcp-client-version"),
        protocol_version=headers.get("x-mcp-protocol-version"),
    )


def format_sse(event: str, data: Any) -> str:
    payload = data if isinstance(data, str) else json.dumps(data, default=str)
    lines = "".join(f"data: {line}\n" for line in payload.splitlines() or [""])
    return f"event: {event}\n{lines}\n"


class SseChannel:
    """
    Outbound event queue for one SSE connection.

    The lock serialises tool calls on this connection so results go out in
    the order the requests arrived. A client that stops reading fills the
    queue; the channel then closes itself and the stream ends, which takes
    the connection out of the pool.
    """

    def __init__(
        self, connection_id: str, ping_interval: float = 15.0, max_pending: int = 256
    ):
        self.connection_id = connection_id
        self.ping_interval = ping_interval
        self.lock = asyncio.Lock()
        self._queue: "asyncio.Queue[Optional[Tuple[str, Any]]]" = asyncio.Queue(
            maxsize=max_pending + 1
        )
        self._max_pending = max_pending
        self._closed = False
        self._overflowed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def overflowed(self) -> bool:
        return self._overflowed

    def pending(self) -> int:
        return self._queue.qsize()

    async def send(self, event: str, data: Any) -> bool:
        if self._closed:
            return False
        if self._queue.qsize() >= self._max_pending:
            logger.warning(
                "SSE client {} stopped reading ({} events queued); closing",
                self.connection_id,
                self._max_pending,
            )
            self._overflowed = True
            await self.close()
            return False
        self._queue.put_nowait((event, data))
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._overflowed:
            # nobody is reading, so unread events are discarded
            while not self._queue.empty():
                self._queue.get_nowait()
        # sentinel ends the stream; one slot is always kept free for it
        self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[str]:
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=self.ping_interval)
            except asyncio.TimeoutError:
                yield ": ping\n\n"
                continue
            if item is None:
                return
            event, data = item
            yield format_sse(event, data)


class StdioChannel:
    """Handle for the single stdio session. The SDK owns the actual streams."""

    def __init__(self) -> None:
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def close(self) -> None:
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()
