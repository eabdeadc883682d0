from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from core.errors import GatewayError, PoolExhaustedError, ShutdownError, ValidationError
from core.pool import Connection, generate_connection_id
from mcp_server.state import SERVER_NAME
from mcp_server.transport import (
    SSE_HEADERS,
    SseChannel,
    client_info_from_headers,
    is_valid_sse_request,
)

# Advertised to clients refused because the pool is full
RETRY_AFTER_SECONDS = 5

PROTOCOL_VERSION = "2024-11-05"


class ToolCallMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    toolName: str = Field(min_length=1)
    arguments: Optional[Dict[str, Any]] = None
    requestId: Optional[Union[str, int]] = None


def _error_response(
    status_code: int, error: GatewayError, headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error.to_dict()},
        headers=headers,
    )


def create_app(state: Any, ping_interval: float = 15.0) -> FastAPI:
    """HTTP/SSE front door over an already-built ServerState."""
    pool = state.pool
    dispatcher = state.dispatcher

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        pool.start()
        logger.info("HTTP/SSE transport ready (max {} connections)", pool.max_connections)
        try:
            yield
        finally:
            await state.close()

    app = FastAPI(title=SERVER_NAME, version=state.version, lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
        return _error_response(
            400, ValidationError("Malformed request", {"fields": fields})
        )

    @app.get("/sse")
    async def sse(request: Request) -> Any:
        if not is_valid_sse_request(request.headers):
            return _error_response(
                400,
                ValidationError(
                    "SSE handshake requires 'Accept: text/event-stream' or 'Cache-Control: no-cache'",
                    {"accept": request.headers.get("accept")},
                ),
            )

        connection_id = generate_connection_id()
        channel = SseChannel(connection_id, ping_interval=ping_interval)
        connection = Connection(
            id=connection_id,
            transport=channel,
            client_info=client_info_from_headers(request.headers),
        )
        try:
            await pool.add_connection(connection)
        except PoolExhaustedError as exc:
            logger.warning("Refused SSE connection: pool full")
            return _error_response(503, exc, headers={"Retry-After": str(RETRY_AFTER_SECONDS)})
        except ShutdownError as exc:
            return _error_response(503, exc, headers={"Connection": "close"})

        await channel.send("endpoint", f"/messages?connection_id={connection_id}")
        await channel.send(
            "handshake",
            {
                "server": {
                    "name": SERVER_NAME,
                    "version": state.version,
                    "protocolVersion": PROTOCOL_VERSION,
                },
                "connectionId": connection_id,
                "tools": dispatcher.registry.list_schemas(),
            },
        )

        async def stream() -> AsyncIterator[str]:
            try:
                async for chunk in channel.events():
                    yield chunk
            except Exception:
                logger.exception("SSE stream for {} failed", connection_id)
            finally:
                # a client disconnect arrives here as cancellation
                await asyncio.shield(pool.remove_connection(connection_id))

        return StreamingResponse(stream(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.post("/messages", status_code=202)
    async def post_message(connection_id: str, message: ToolCallMessage) -> Any:
        if pool.is_draining:
            return _error_response(
                503, ShutdownError("Server is shutting down"), headers={"Connection": "close"}
            )
        connection = pool.get_connection(connection_id)
        if connection is None or not isinstance(connection.transport, SseChannel):
            return _error_response(
                404,
                ValidationError(
                    f"Unknown connection: {connection_id}", {"connectionId": connection_id}
                ),
            )

        pool.touch_activity(connection_id)
        channel = connection.transport
        async with channel.lock:
            result = await dispatcher.dispatch(message.toolName, message.arguments, connection_id)
            delivered = await channel.send(
                "message", {"requestId": message.requestId, **result.to_envelope()}
            )
        if not delivered:
            logger.warning("Result for {} dropped: stream already closed", connection_id)
            return _error_response(
                410,
                ValidationError(
                    f"Connection {connection_id} closed before the result was delivered",
                    {"connectionId": connection_id, "requestId": message.requestId},
                ),
            )

        return {"accepted": True, "connectionId": connection_id, "requestId": message.requestId}

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return state.reporter.health()

    @app.get("/metrics")
    async def metrics() -> Dict[str, Any]:
        return state.reporter.metrics()

    @app.get("/tools")
    async def tools() -> Dict[str, Any]:
        schemas = dispatcher.registry.list_schemas()
        return {"tools": schemas, "total": len(schemas)}

    return app
