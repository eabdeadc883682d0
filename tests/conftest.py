from __future__ import annotations

import itertools
import json
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from core.config import Settings
from mcp_server.state import ServerState, build_state


class StubN8n:
    """In-memory stand-in for the n8n public API, served through httpx.MockTransport."""

    def __init__(self, server_side_filters: bool = True) -> None:
        self.server_side_filters = server_side_filters
        self.workflows: Dict[str, Dict[str, Any]] = {}
        self.executions: Dict[str, Dict[str, Any]] = {}
        self.variables: List[Dict[str, Any]] = []
        self.credentials: List[Dict[str, Any]] = []
        self.requests: List[Tuple[str, str, Dict[str, str], Any]] = []
        self.failures: Dict[Tuple[str, str], int] = {}
        self._ids = itertools.count(100)

    # helpers for tests
    def add_workflow(self, workflow_id: str, **fields: Any) -> Dict[str, Any]:
        workflow = {"id": workflow_id, "name": f"wf-{workflow_id}", "active": False,
                    "nodes": [], "connections": {}, "settings": {}}
        workflow.update(fields)
        self.workflows[workflow_id] = workflow
        return workflow

    def add_execution(self, execution_id: str, **fields: Any) -> Dict[str, Any]:
        execution = {"id": execution_id, "finished": True, "status": "success", "mode": "manual"}
        execution.update(fields)
        self.executions[execution_id] = execution
        return execution

    def fail(self, method: str, path: str, status: int) -> None:
        self.failures[(method, path)] = status

    def calls(self, method: Optional[str] = None) -> List[Tuple[str, str]]:
        return [(m, p) for m, p, _, _ in self.requests if method is None or m == method]

    # transport
    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/v1")
        params = dict(request.url.params)
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, params, body))

        if request.headers.get("X-N8N-API-KEY") != "test-key":
            return httpx.Response(401, json={"message": "unauthorized"})
        status = self.failures.get((request.method, path))
        if status is not None:
            return httpx.Response(status, json={"message": f"forced {status}"})
        return self._route(request.method, path, params, body)

    def _route(self, method: str, path: str, params: Dict[str, str], body: Any) -> httpx.Response:
        if path == "/workflows" and method == "GET":
            items = list(self.workflows.values())
            if self.server_side_filters and "active" in params:
                wanted = params["active"] == "true"
                items = [wf for wf in items if wf.get("active") == wanted]
            if "limit" in params:
                items = items[: int(params["limit"])]
            return httpx.Response(200, json={"data": items, "nextCursor": None})
        if path == "/workflows" and method == "POST":
            workflow_id = str(next(self._ids))
            workflow = {"id": workflow_id, "active": False, **body}
            self.workflows[workflow_id] = workflow
            return httpx.Response(200, json=workflow)

        match = re.fullmatch(r"/workflows/([^/]+)(?:/(activate|deactivate|execute))?", path)
        if match:
            workflow = self.workflows.get(match.group(1))
            if workflow is None:
                return httpx.Response(404, json={"message": "Not Found"})
            action = match.group(2)
            if method == "GET" and action is None:
                return httpx.Response(200, json=workflow)
            if method == "PUT" and action is None:
                workflow.update(body)
                return httpx.Response(200, json=workflow)
            if method == "DELETE" and action is None:
                del self.workflows[workflow["id"]]
                return httpx.Response(200, json=workflow)
            if method == "POST" and action in ("activate", "deactivate"):
                workflow["active"] = action == "activate"
                return httpx.Response(200, json=workflow)
            if method == "POST" and action == "execute":
                execution = self.add_execution(str(next(self._ids)), workflowId=workflow["id"])
                return httpx.Response(200, json=execution)

        if path == "/executions" and method == "GET":
            items = list(self.executions.values())
            if "workflowId" in params:
                items = [e for e in items if str(e.get("workflowId")) == params["workflowId"]]
            if "status" in params:
                items = [e for e in items if e.get("status") == params["status"]]
            items = items[: int(params.get("limit", 100))]
            return httpx.Response(200, json={"data": items})
        match = re.fullmatch(r"/executions/([^/]+)", path)
        if match and method == "GET":
            execution = self.executions.get(match.group(1))
            if execution is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=execution)

        if path == "/variables" and method == "GET":
            return httpx.Response(200, json={"data": self.variables})
        if path == "/variables" and method == "POST":
            variable = {"id": str(next(self._ids)), **body}
            self.variables.append(variable)
            return httpx.Response(201, json=variable)
        if path == "/credentials" and method == "POST":
            credential = {"id": str(next(self._ids)), "name": body["name"], "type": body["type"]}
            self.credentials.append({**credential, "data": body["data"]})
            return httpx.Response(200, json=credential)

        return httpx.Response(404, json={"message": f"no route {method} {path}"})


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def stub() -> StubN8n:
    return StubN8n()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def settings() -> Settings:
    return Settings(n8n_api_url="http://n8n.test", n8n_api_key="test-key")


@pytest.fixture
def state(settings: Settings, stub: StubN8n, sleeper: SleepRecorder) -> ServerState:
    return build_state(settings, transport=httpx.MockTransport(stub), sleep=sleeper)
