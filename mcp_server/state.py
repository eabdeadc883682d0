from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx
from loguru import logger

from client.n8n_client import N8nClient
from core.config import Settings
from core.errors import GatewayError, InitializationError
from core.metrics import RequestMetrics
from core.pool import ConnectionPool
from core.resilience import RetryPolicy, Sleeper, execute_with_resilience
from mcp_server.dispatcher import Dispatcher
from mcp_server.health import HealthReporter
from mcp_server.tools import registry


SERVER_NAME = "n8n-mcp-gateway"
SERVER_VERSION = "0.1.0"

# Startup connectivity check: 3 attempts, 10s each
UPSTREAM_CHECK_POLICY = RetryPolicy(max_retries=3, base_delay=1.0, timeout=10.0)


@dataclass
class ServerState:
    """Everything one running server needs, built once and passed to the front doors."""

    settings: Settings
    client: N8nClient
    pool: ConnectionPool
    dispatcher: Dispatcher
    metrics: RequestMetrics
    started_at: float = field(default_factory=time.time)
    version: str = SERVER_VERSION
    reporter: Optional[HealthReporter] = None
    _closed: bool = field(default=False, init=False, repr=False)

    async def check_upstream(
        self, policy: RetryPolicy = UPSTREAM_CHECK_POLICY, sleep: Sleeper = asyncio.sleep
    ) -> None:
        try:
            await execute_with_resilience(
                self.client.ping, policy, sleep=sleep, label="n8n connectivity check"
            )
        except GatewayError as exc:
            raise InitializationError(
                f"n8n API unreachable at {self.client.base_url}: {exc.message}",
                {"phase": "upstream_check", "cause": exc.to_dict()},
            ) from exc
        logger.info("Connected to n8n API at {}", self.client.base_url)

    async def close(self) -> None:
        """Drain the pool, then release the HTTP client. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await self.pool.shutdown()
        await self.client.close()
        logger.info("Server state torn down")


def build_state(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Sleeper = asyncio.sleep,
) -> ServerState:
    client = N8nClient.from_settings(settings, transport=transport)
    metrics = RequestMetrics()
    pool = ConnectionPool(
        max_connections=settings.max_connections,
        connection_timeout=settings.connection_timeout,
        sweep_interval=settings.sweep_interval,
    )
    dispatcher = Dispatcher(
        registry,
        client,
        metrics,
        policy=settings.retry_policy(),
        sleep=sleep,
    )
    state = ServerState(
        settings=settings,
        client=client,
        pool=pool,
        dispatcher=dispatcher,
        metrics=metrics,
    )
    state.reporter = HealthReporter(state)
    dispatcher.attach_probes(state.reporter)
    return state
