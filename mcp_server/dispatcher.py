"""Routes tool invocations to handlers and normalises every outcome."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

import pydantic
from loguru import logger

from core.errors import (
    GatewayError,
    UnknownToolError,
    ValidationError,
    classify_exception,
    validation_error_from_pydantic,
)
from core.metrics import RequestMetrics
from core.resilience import RetryPolicy, Sleeper, execute_with_resilience
from core.results import Failure, Success, ToolResult
from core.specs import ToolArgs
from mcp_server.registry import ToolContext, ToolDescriptor, ToolRegistry

UNKNOWN_TOOL_BUCKET = "<unknown>"


@dataclass(frozen=True)
class ToolInvocation:
    tool_name: str
    raw_arguments: Any
    connection_id: Optional[str] = None
    requested_at: float = field(default_factory=time.time)


class Dispatcher:
    """
    The crash-prevention boundary between front doors and tool handlers.

    dispatch() always returns a ToolResult. Each call bumps the request
    counter once on entry and exactly one of success/failure on exit.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        client: Any,
        metrics: RequestMetrics,
        policy: Optional[RetryPolicy] = None,
        sleep: Sleeper = asyncio.sleep,
        client_factory: Optional[Callable[[str, str], Any]] = None,
    ):
        self._registry = registry
        self._client = client
        self._metrics = metrics
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._client_factory = client_factory
        self._probes: Optional[Any] = None

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def attach_probes(self, probes: Any) -> None:
        self._probes = probes

    def policy_for(self, tool: ToolDescriptor) -> RetryPolicy:
        return self._policy if tool.idempotent else self._policy.single_attempt()

    async def dispatch(
        self,
        tool_name: str,
        raw_arguments: Any = None,
        connection_id: Optional[str] = None,
    ) -> ToolResult:
        invocation = ToolInvocation(tool_name, raw_arguments, connection_id)
        bucket = tool_name if tool_name in self._registry else UNKNOWN_TOOL_BUCKET
        log = logger.bind(tool=tool_name, connection_id=connection_id)

        started = time.perf_counter()
        self._metrics.record_start(bucket)
        try:
            data = await self._execute(invocation)
        except asyncio.CancelledError:
            # The caller went away; keep the counters balanced before unwinding
            self._metrics.record_failure("Cancelled", _elapsed_ms(started))
            raise
        except Exception as exc:
            error = classify_exception(exc, tool_name)
            if not isinstance(exc, GatewayError):
                log.exception("Unexpected error in tool {}", tool_name)
            elapsed = _elapsed_ms(started)
            self._metrics.record_failure(error.kind.value, elapsed)
            log.warning(
                "Tool {} failed with {} after {:.1f}ms: {}",
                tool_name,
                error.kind.value,
                elapsed,
                error.message,
            )
            return Failure.from_error(error)

        elapsed = _elapsed_ms(started)
        self._metrics.record_success(elapsed)
        log.info("Tool {} succeeded in {:.1f}ms", tool_name, elapsed)
        return Success(data)

    async def _execute(self, invocation: ToolInvocation) -> Any:
        tool = self._registry.get(invocation.tool_name)
        if tool is None:
            raise UnknownToolError(
                f"Unknown tool: {invocation.tool_name}",
                {"tool": invocation.tool_name, "available": self._registry.names()},
            )

        args = self._validate(tool, invocation.raw_arguments)
        context = ToolContext(
            client=self._client,
            connection_id=invocation.connection_id,
            probes=self._probes,
            client_factory=self._client_factory,
        )
        return await execute_with_resilience(
            lambda: tool.handler(context, args),
            self.policy_for(tool),
            sleep=self._sleep,
            label=tool.name,
        )

    @staticmethod
    def _validate(tool: ToolDescriptor, raw_arguments: Any) -> ToolArgs:
        if raw_arguments is None:
            raw_arguments = {}
        if not isinstance(raw_arguments, Mapping):
            raise ValidationError(
                f"Arguments for {tool.name} must be an object",
                {"tool": tool.name, "fields": ["<root>"]},
            )
        try:
            return tool.args_model.model_validate(dict(raw_arguments))
        except pydantic.ValidationError as exc:
            raise validation_error_from_pydantic(tool.name, exc) from None


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
