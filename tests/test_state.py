from __future__ import annotations

from typing import Any

import pytest

from core.errors import InitializationError
from core.pool import Connection, generate_connection_id
from mcp_server.health import memory_used
from mcp_server.state import ServerState


class NullTransport:
    async def close(self) -> None:
        return None


@pytest.mark.asyncio
async def test_check_upstream_succeeds(state: ServerState, stub: Any, sleeper: Any) -> None:
    await state.check_upstream(sleep=sleeper)
    assert stub.calls("GET") == [("GET", "/workflows")]


@pytest.mark.asyncio
async def test_check_upstream_retries_then_fails_initialization(
    state: ServerState, stub: Any, sleeper: Any
) -> None:
    stub.fail("GET", "/workflows", 503)

    with pytest.raises(InitializationError) as info:
        await state.check_upstream(sleep=sleeper)

    assert len(stub.calls("GET")) == 3
    assert sleeper.delays == [1.0, 2.0]
    assert info.value.details["phase"] == "upstream_check"
    assert info.value.details["cause"]["details"]["statusCode"] == 503


@pytest.mark.asyncio
async def test_check_upstream_bad_key_is_not_retried(state: ServerState, stub: Any, sleeper: Any) -> None:
    stub.fail("GET", "/workflows", 401)

    with pytest.raises(InitializationError):
        await state.check_upstream(sleep=sleeper)

    assert len(stub.calls("GET")) == 1


@pytest.mark.asyncio
async def test_close_drains_pool_once(state: ServerState) -> None:
    await state.pool.add_connection(Connection(id=generate_connection_id(), transport=NullTransport()))

    await state.close()
    await state.close()

    assert state.pool.is_draining
    assert state.pool.size == 0
    assert state.reporter is not None
    assert state.reporter.health()["status"] == "draining"


def test_health_report_shape(state: ServerState) -> None:
    assert state.reporter is not None
    health = state.reporter.health()

    assert set(health) == {
        "status", "uptime", "uptimeHuman", "activeConnections",
        "totalConnections", "memoryUsed", "timestamp", "version",
    }
    assert health["status"] == "healthy"
    assert health["version"] == state.version
    assert health["uptime"] >= 0


@pytest.mark.asyncio
async def test_metrics_report_includes_recent_pool_events(state: ServerState) -> None:
    assert state.reporter is not None
    for _ in range(25):
        connection_id = generate_connection_id()
        await state.pool.add_connection(Connection(id=connection_id, transport=NullTransport()))
        await state.pool.remove_connection(connection_id)

    report = state.reporter.metrics()

    assert report["connections"]["active"] == 0
    assert report["connections"]["total"] == 25
    assert len(report["connections"]["recentEvents"]) == 20
    assert report["requests"]["total"] == 0


def test_memory_used_is_positive() -> None:
    assert memory_used() > 0
