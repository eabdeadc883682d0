"""Bounded pool of live client connections with idle eviction."""
from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

from loguru import logger

from core.errors import PoolExhaustedError, ShutdownError


EVENT_HISTORY_LIMIT = 1000


class ConnectionState(Enum):
    PENDING = "pending"  # Accepted, handshake in flight
    ACTIVE = "active"  # Registered in the pool
    CLOSING = "closing"  # Removal started
    CLOSED = "closed"  # Removed, transport released


class TransportHandle(Protocol):
    async def close(self) -> None:
        ...


@dataclass
class ClientInfo:
    """Peer-reported descriptor. Advisory only."""

    name: str = "unknown"
    version: Optional[str] = None
    protocol_version: Optional[str] = None
    capabilities: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "protocolVersion": self.protocol_version,
            "capabilities": self.capabilities,
        }


@dataclass
class Connection:
    id: str
    transport: TransportHandle
    client_info: ClientInfo = field(default_factory=ClientInfo)
    established_at: float = field(default_factory=time.monotonic)
    last_activity_at: float = field(default_factory=time.monotonic)
    state: ConnectionState = ConnectionState.PENDING

    def idle_for(self, now: float) -> float:
        return now - self.last_activity_at


@dataclass(frozen=True)
class ConnectionEvent:
    connection_id: str
    event: str  # connected | disconnected | error | timeout
    timestamp: float = field(default_factory=time.time)
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "connectionId": self.connection_id,
            "event": self.event,
            "timestamp": self.timestamp,
        }
        if self.details:
            payload["details"] = self.details
        return payload


def generate_connection_id() -> str:
    """uuid4 based, so ids are never reused within a process."""
    return f"conn_{uuid.uuid4().hex}"


class ConnectionPool:
    """
    Tracks one entry per live client connection.

    Membership changes happen under an asyncio.Lock, so concurrent
    add_connection calls can never push the pool past max_connections.
    A background task evicts connections idle longer than connection_timeout.

    Parameters:
    - max_connections: Capacity, fixed at construction (default: 100)
    - connection_timeout: Idle seconds before eviction (default: 300)
    - sweep_interval: Seconds between eviction sweeps (default: 60)
    - clock: Monotonic time source, replaceable in tests
    """

    def __init__(
        self,
        max_connections: int = 100,
        connection_timeout: float = 300.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_connections <= 0:
            raise ValueError("max_connections must be positive")
        if connection_timeout <= 0:
            raise ValueError("connection_timeout must be positive")
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be positive")

        self._max_connections = max_connections
        self._connection_timeout = connection_timeout
        self._sweep_interval = sweep_interval
        self._clock = clock

        self._connections: Dict[str, Connection] = {}
        self._events: Deque[ConnectionEvent] = deque(maxlen=EVENT_HISTORY_LIMIT)
        self._lock = asyncio.Lock()
        self._draining = False
        self._sweep_task: Optional[asyncio.Task] = None
        self._total_accepted = 0

    @property
    def max_connections(self) -> int:
        return self._max_connections

    @property
    def connection_timeout(self) -> float:
        return self._connection_timeout

    @property
    def size(self) -> int:
        return len(self._connections)

    @property
    def active_count(self) -> int:
        return sum(
            1 for conn in self._connections.values() if conn.state is ConnectionState.ACTIVE
        )

    @property
    def total_accepted(self) -> int:
        return self._total_accepted

    @property
    def is_draining(self) -> bool:
        return self._draining

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def events(self, limit: Optional[int] = None) -> List[ConnectionEvent]:
        items = list(self._events)
        return items[-limit:] if limit else items

    def _record(self, connection_id: str, event: str, **details: Any) -> None:
        self._events.append(ConnectionEvent(connection_id, event, details=details or None))

    async def add_connection(self, connection: Connection) -> Connection:
        async with self._lock:
            if self._draining:
                raise ShutdownError(
                    "Server is shutting down", {"connectionId": connection.id}
                )
            if len(self._connections) >= self._max_connections:
                self._record(connection.id, "error", reason="pool_exhausted")
                raise PoolExhaustedError(
                    f"Connection pool full ({self._max_connections} connections)",
                    {
                        "maxConnections": self._max_connections,
                        "activeConnections": len(self._connections),
                    },
                )
            now = self._clock()
            connection.established_at = now
            connection.last_activity_at = now
            connection.state = ConnectionState.ACTIVE
            self._connections[connection.id] = connection
            self._total_accepted += 1
            self._record(connection.id, "connected", client=connection.client_info.name)

        logger.info(
            "Connection {} registered ({}/{})",
            connection.id,
            self.size,
            self._max_connections,
        )
        return connection

    async def remove_connection(self, connection_id: str, event: str = "disconnected") -> bool:
        """Remove and close a connection. Unknown ids are a no-op."""
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return False
            connection.state = ConnectionState.CLOSING
            self._record(connection_id, event)

        try:
            await connection.transport.close()
        except Exception:
            logger.exception("Failed to close transport for {}", connection_id)
        connection.state = ConnectionState.CLOSED
        logger.info("Connection {} removed ({})", connection_id, event)
        return True

    def touch_activity(self, connection_id: str) -> None:
        # Lock-free: a concurrent removal just makes this a no-op
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.last_activity_at = self._clock()

    async def sweep(self) -> int:
        """Evict every connection idle past connection_timeout; returns the count."""
        now = self._clock()
        stale = [
            conn.id
            for conn in list(self._connections.values())
            if conn.idle_for(now) > self._connection_timeout
        ]
        removed = 0
        for connection_id in stale:
            if await self.remove_connection(connection_id, event="timeout"):
                removed += 1
        if removed:
            logger.info("Evicted {} idle connection(s)", removed)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Connection sweep failed")

    def start(self) -> None:
        """Launch the background sweep. Must be called from a running loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        """Drain the pool. New connections are refused from this point on."""
        self._draining = True
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        ids = list(self._connections.keys())
        results = await asyncio.gather(
            *(self.remove_connection(connection_id) for connection_id in ids),
            return_exceptions=True,
        )
        for connection_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.error("Removing {} during shutdown failed: {}", connection_id, result)
        logger.info("Connection pool drained ({} connection(s) closed)", len(ids))
