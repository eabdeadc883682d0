from __future__ import annotations

import httpx
from typing import Any, Dict, List, Optional, Union, cast

from loguru import logger

from core.config import Settings
from core.errors import CallTimeoutError, UpstreamError

WorkflowId = Union[str, int]

_BODY_LIMIT = 2000


class N8nClient:
    """
    Thin async wrapper around the n8n public REST API.

    Every transport or HTTP failure is classified here, so callers only ever
    see UpstreamError or CallTimeoutError.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = f"{base_url.rstrip('/')}/api/v1"
        self._headers = {
            "X-N8N-API-KEY": api_key,
            "Accept": "application/json",
        }
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "N8nClient":
        return cls(
            settings.n8n_api_url,
            settings.n8n_api_key,
            timeout=settings.tool_timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        endpoint = f"{method} {path}"
        try:
            resp = await self._client.request(method, path, params=params, json=json)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            body = exc.response.text[:_BODY_LIMIT]
            logger.debug("n8n responded {} for {}", status, endpoint)
            raise UpstreamError(
                f"n8n API returned {status} for {endpoint}",
                endpoint=endpoint,
                status_code=status,
                response_body=body,
            ) from None
        except httpx.TimeoutException:
            raise CallTimeoutError(
                f"n8n API timed out on {endpoint}", {"endpoint": endpoint}
            ) from None
        except httpx.RequestError as exc:
            raise UpstreamError(
                f"Could not reach n8n API for {endpoint}: {exc}",
                endpoint=endpoint,
            ) from None

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            raise UpstreamError(
                f"n8n API returned a non-JSON body for {endpoint}",
                endpoint=endpoint,
                status_code=resp.status_code,
                response_body=resp.text[:_BODY_LIMIT],
                details={"malformed": True},
            ) from None

    @staticmethod
    def _unwrap_list(payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, list):
            raw = payload
        elif isinstance(payload, dict):
            raw = payload.get("data", [])
        else:
            raw = []
        return [cast(Dict[str, Any], item) for item in raw if isinstance(item, dict)]

    @staticmethod
    def _unwrap_item(payload: Any) -> Dict[str, Any]:
        # Executions carry their own "data" field; only id-less envelopes are unwrapped
        if isinstance(payload, dict):
            inner = payload.get("data")
            if "id" not in payload and isinstance(inner, dict):
                return inner
            return payload
        return {"data": payload}

    # Connectivity
    async def ping(self) -> None:
        """Cheapest authenticated call: fails fast on a bad URL or key."""
        await self._request("GET", "/workflows", params={"limit": 1})

    # Workflows
    async def list_workflows(
        self, params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        return self._unwrap_list(await self._request("GET", "/workflows", params=params))

    async def get_workflow(self, workflow_id: WorkflowId) -> Dict[str, Any]:
        return self._unwrap_item(await self._request("GET", f"/workflows/{workflow_id}"))

    async def create_workflow(self, workflow_json: Dict[str, Any]) -> Dict[str, Any]:
        return self._unwrap_item(await self._request("POST", "/workflows", json=workflow_json))

    async def update_workflow(
        self, workflow_id: WorkflowId, workflow_json: Dict[str, Any]
    ) -> Dict[str, Any]:
        return self._unwrap_item(
            await self._request("PUT", f"/workflows/{workflow_id}", json=workflow_json)
        )

    async def delete_workflow(self, workflow_id: WorkflowId) -> Dict[str, Any]:
        await self._request("DELETE", f"/workflows/{workflow_id}")
        return {"status": "deleted", "id": workflow_id}

    async def set_activation(self, workflow_id: WorkflowId, active: bool) -> Dict[str, Any]:
        endpoint = "activate" if active else "deactivate"
        return self._unwrap_item(
            await self._request("POST", f"/workflows/{workflow_id}/{endpoint}")
        )

    async def execute_workflow(
        self, workflow_id: WorkflowId, data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return self._unwrap_item(
            await self._request(
                "POST", f"/workflows/{workflow_id}/execute", json={"data": data or {}}
            )
        )

    # Executions
    async def list_executions(
        self, params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """List executions; params are passed through (workflowId, status, limit)."""
        return self._unwrap_list(await self._request("GET", "/executions", params=params))

    async def get_execution(
        self, execution_id: WorkflowId, include_data: bool = True
    ) -> Dict[str, Any]:
        params = {"includeData": "true"} if include_data else None
        return self._unwrap_item(
            await self._request("GET", f"/executions/{execution_id}", params=params)
        )

    # Variables
    async def list_variables(self) -> List[Dict[str, Any]]:
        return self._unwrap_list(await self._request("GET", "/variables"))

    async def create_variable(self, key: str, value: str) -> Dict[str, Any]:
        return self._unwrap_item(
            await self._request("POST", "/variables", json={"key": key, "value": value})
        )

    # Credentials
    async def create_credential(self, credential_data: Dict[str, Any]) -> Dict[str, Any]:
        return self._unwrap_item(
            await self._request("POST", "/credentials", json=credential_data)
        )
