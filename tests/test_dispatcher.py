from __future__ import annotations

import asyncio
from typing import Any, Dict

import pytest

from core.errors import ErrorKind, UpstreamError
from core.metrics import RequestMetrics
from core.resilience import RetryPolicy
from core.results import Failure, Success
from core.specs import ToolArgs
from mcp_server.dispatcher import Dispatcher
from mcp_server.registry import ToolContext, ToolRegistry
from mcp_server.state import ServerState


class EchoArgs(ToolArgs):
    text: str
    times: int = 1


class Recorder:
    def __init__(self) -> None:
        self.calls = 0


def make_dispatcher(sleeper: Any, policy: RetryPolicy = RetryPolicy()) -> tuple:
    registry = ToolRegistry()
    recorder = Recorder()
    metrics = RequestMetrics()

    @registry.register("echo", "Echo text", EchoArgs)
    async def echo(ctx: ToolContext, args: EchoArgs) -> Dict[str, Any]:
        recorder.calls += 1
        return {"text": args.text * args.times, "actor": ctx.actor}

    @registry.register("flaky_read", "Fails twice", EchoArgs)
    async def flaky_read(ctx: ToolContext, args: EchoArgs) -> Dict[str, Any]:
        recorder.calls += 1
        if recorder.calls < 3:
            raise UpstreamError("busy", endpoint="GET /x", status_code=503)
        return {"ok": True}

    @registry.register("flaky_write", "Fails once", EchoArgs, idempotent=False)
    async def flaky_write(ctx: ToolContext, args: EchoArgs) -> Dict[str, Any]:
        recorder.calls += 1
        raise UpstreamError("busy", endpoint="POST /x", status_code=503)

    @registry.register("broken", "Raises something unexpected", EchoArgs)
    async def broken(ctx: ToolContext, args: EchoArgs) -> Dict[str, Any]:
        recorder.calls += 1
        return {"value": {}["missing"]}

    @registry.register("hangs", "Never returns", EchoArgs)
    async def hangs(ctx: ToolContext, args: EchoArgs) -> Dict[str, Any]:
        recorder.calls += 1
        await asyncio.sleep(10)
        return {}

    dispatcher = Dispatcher(registry, client=object(), metrics=metrics, policy=policy, sleep=sleeper)
    return dispatcher, recorder, metrics


@pytest.mark.asyncio
async def test_success_is_wrapped_and_counted(sleeper: Any) -> None:
    dispatcher, recorder, metrics = make_dispatcher(sleeper)

    result = await dispatcher.dispatch("echo", {"text": "ab", "times": 2}, connection_id="conn_1")

    assert result == Success({"text": "abab", "actor": "conn_1"})
    snap = metrics.snapshot()
    assert (snap.total, snap.successful, snap.failed) == (1, 1, 0)


@pytest.mark.asyncio
async def test_unknown_tool_never_reaches_a_handler(sleeper: Any) -> None:
    dispatcher, recorder, metrics = make_dispatcher(sleeper)

    result = await dispatcher.dispatch("does_not_exist", {"text": "x"})

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.UNKNOWN_TOOL
    assert recorder.calls == 0
    snap = metrics.snapshot()
    assert (snap.total, snap.successful, snap.failed) == (1, 0, 1)
    assert metrics.get_summary()["requests"]["byTool"] == {"<unknown>": 1}


@pytest.mark.asyncio
@pytest.mark.parametrize("name", [["echo"], {"tool": "echo"}, None, 7])
async def test_non_string_tool_name_is_an_unknown_tool(sleeper: Any, name: Any) -> None:
    dispatcher, recorder, metrics = make_dispatcher(sleeper)

    result = await dispatcher.dispatch(name, {"text": "x"})

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.UNKNOWN_TOOL
    assert recorder.calls == 0
    assert metrics.get_summary()["requests"]["byTool"] == {"<unknown>": 1}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "arguments, field",
    [({}, "text"), ({"text": "x", "times": "many"}, "times"), ({"text": "x", "extra": 1}, "extra")],
)
async def test_invalid_arguments_fail_validation_without_retry(
    sleeper: Any, arguments: Dict[str, Any], field: str
) -> None:
    dispatcher, recorder, metrics = make_dispatcher(sleeper)

    result = await dispatcher.dispatch("flaky_read", arguments)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.VALIDATION
    assert field in result.details["fields"]
    assert recorder.calls == 0
    assert sleeper.delays == []
    assert metrics.snapshot().failed == 1


@pytest.mark.asyncio
async def test_non_object_arguments_fail_validation(sleeper: Any) -> None:
    dispatcher, recorder, _ = make_dispatcher(sleeper)
    result = await dispatcher.dispatch("echo", ["text"])
    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.VALIDATION
    assert recorder.calls == 0


@pytest.mark.asyncio
async def test_none_arguments_are_treated_as_empty(sleeper: Any) -> None:
    dispatcher, _, _ = make_dispatcher(sleeper)
    result = await dispatcher.dispatch("echo", None)
    assert isinstance(result, Failure)
    assert result.details["fields"] == ["text"]


@pytest.mark.asyncio
async def test_idempotent_tool_is_retried_with_backoff(sleeper: Any) -> None:
    dispatcher, recorder, metrics = make_dispatcher(sleeper)

    result = await dispatcher.dispatch("flaky_read", {"text": "x"})

    assert result == Success({"ok": True})
    assert recorder.calls == 3
    assert sleeper.delays == [1.0, 2.0]
    assert metrics.snapshot().successful == 1


@pytest.mark.asyncio
async def test_non_idempotent_tool_gets_a_single_attempt(sleeper: Any) -> None:
    dispatcher, recorder, _ = make_dispatcher(sleeper)

    result = await dispatcher.dispatch("flaky_write", {"text": "x"})

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.UPSTREAM
    assert result.details["statusCode"] == 503
    assert recorder.calls == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_unexpected_exception_is_classified_not_raised(sleeper: Any) -> None:
    dispatcher, recorder, metrics = make_dispatcher(sleeper)

    result = await dispatcher.dispatch("broken", {"text": "x"})

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.UPSTREAM
    assert recorder.calls == 1
    assert metrics.snapshot().failed == 1


@pytest.mark.asyncio
async def test_timeout_becomes_failure_after_every_attempt(sleeper: Any) -> None:
    policy = RetryPolicy(max_retries=2, base_delay=0.5, timeout=0.02)
    dispatcher, recorder, _ = make_dispatcher(sleeper, policy)

    result = await dispatcher.dispatch("hangs", {"text": "x"})

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.TIMEOUT
    assert recorder.calls == 2
    assert sleeper.delays == [0.5]


@pytest.mark.asyncio
async def test_counters_balance_under_concurrency(sleeper: Any) -> None:
    dispatcher, _, metrics = make_dispatcher(sleeper)

    calls = [dispatcher.dispatch("echo", {"text": "x"}) for _ in range(25)]
    calls += [dispatcher.dispatch("nope", {}) for _ in range(10)]
    calls += [dispatcher.dispatch("echo", {}) for _ in range(5)]
    await asyncio.gather(*calls)

    snap = metrics.snapshot()
    assert snap.total == 40
    assert snap.successful == 25
    assert snap.failed == 15
    assert snap.in_flight == 0


# End to end through the real tool registry and a stub upstream


@pytest.mark.asyncio
async def test_list_workflows_active_filter_end_to_end(state: ServerState, stub: Any) -> None:
    stub.add_workflow("1", name="Inactive", active=False)
    stub.add_workflow("2", name="Active", active=True)

    result = await state.dispatcher.dispatch("list_workflows", {"active": True})

    assert isinstance(result, Success)
    assert result.data["total"] == 1
    assert [wf["name"] for wf in result.data["workflows"]] == ["Active"]
    assert stub.requests[0][2] == {"active": "true"}


@pytest.mark.asyncio
async def test_list_workflows_filters_locally_when_upstream_ignores_params(
    state: ServerState, stub: Any
) -> None:
    stub.server_side_filters = False
    stub.add_workflow("1", name="Billing sync", active=True)
    stub.add_workflow("2", name="Invoices", active=False)
    stub.add_workflow("3", name="Other", active=True)

    result = await state.dispatcher.dispatch("list_workflows", {"active": True, "search": "BILL"})

    assert isinstance(result, Success)
    assert result.data["total"] == 1
    assert result.data["workflows"][0]["id"] == "1"


@pytest.mark.asyncio
async def test_get_workflow_404_end_to_end(state: ServerState, stub: Any) -> None:
    before = state.metrics.snapshot()

    result = await state.dispatcher.dispatch("get_workflow", {"workflowId": "missing"})

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.UPSTREAM
    assert result.details["statusCode"] == 404
    after = state.metrics.snapshot()
    assert after.failed == before.failed + 1
    # 404 is not retried
    assert stub.calls("GET") == [("GET", "/workflows/missing")]


@pytest.mark.asyncio
async def test_get_workflow_retries_server_errors(state: ServerState, stub: Any, sleeper: Any) -> None:
    stub.fail("GET", "/workflows/1", 502)

    result = await state.dispatcher.dispatch("get_workflow", {"workflowId": 1})

    assert isinstance(result, Failure)
    assert len(stub.calls("GET")) == 3
    assert sleeper.delays == [1.0, 2.0]
