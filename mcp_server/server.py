from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import uvicorn
from loguru import logger
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from core.config import Settings
from core.errors import InitializationError, PoolExhaustedError, ShutdownError
from core.logging import configure_logging
from core.pool import ClientInfo, Connection, generate_connection_id
from mcp_server.app import create_app
from mcp_server.state import SERVER_NAME, SERVER_VERSION, ServerState, build_state
from mcp_server.transport import StdioChannel


def _text_payload(payload: Dict[str, Any]) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, default=str))]


class StdioFrontDoor:
    """
    Serves a single MCP session over stdin/stdout.

    The SDK performs the initialize handshake; this class owns the pool
    entry for the session and hands tool calls to the dispatcher.
    """

    def __init__(self, state: ServerState):
        self._state = state
        self._connection: Optional[Connection] = None
        self.server = self._build_server()

    @property
    def connection_id(self) -> Optional[str]:
        return self._connection.id if self._connection else None

    def _build_server(self) -> Server:
        server: Server = Server(SERVER_NAME, version=SERVER_VERSION)

        # mypy struggles with dynamic decorator types exposed by the MCP library.
        @server.list_tools()  # type: ignore[misc,no-untyped-call]
        async def _list_tools() -> List[Tool]:
            return self.list_tools()

        # The dispatcher validates arguments and builds the failure envelope
        @server.call_tool(validate_input=False)  # type: ignore[misc,no-untyped-call]
        async def _call_tool(name: str, arguments: Optional[Dict[str, Any]]) -> List[TextContent]:
            self._adopt_client_info(server)
            return _text_payload(await self.handle_call(name, arguments))

        return server

    def list_tools(self) -> List[Tool]:
        return [
            Tool(name=item["name"], description=item["description"], inputSchema=item["inputSchema"])
            for item in self._state.dispatcher.registry.list_schemas()
        ]

    def _adopt_client_info(self, server: Server) -> None:
        if self._connection is None or self._connection.client_info.version:
            return
        try:
            params = server.request_context.session.client_params
        except LookupError:
            return
        if params is None:
            return
        self._connection.client_info = ClientInfo(
            name=params.clientInfo.name,
            version=params.clientInfo.version,
            protocol_version=str(params.protocolVersion),
        )

    async def on_session_start(self, client_info: Optional[ClientInfo] = None) -> Connection:
        connection = Connection(
            id=generate_connection_id(),
            transport=StdioChannel(),
            client_info=client_info or ClientInfo(name="stdio"),
        )
        try:
            await self._state.pool.add_connection(connection)
        except (PoolExhaustedError, ShutdownError) as exc:
            # There is only one stdio session, so a refusal here is fatal
            raise InitializationError(
                f"stdio session rejected: {exc.message}",
                {"phase": "session_start", "cause": exc.to_dict()},
            ) from exc
        self._connection = connection
        return connection

    async def handle_call(self, name: str, arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        connection_id = self.connection_id
        if connection_id is not None:
            self._state.pool.touch_activity(connection_id)
        result = await self._state.dispatcher.dispatch(name, arguments, connection_id)
        return result.to_envelope()

    async def on_session_end(self) -> None:
        if self._connection is not None:
            await self._state.pool.remove_connection(self._connection.id)
            self._connection = None

    async def run(self) -> None:
        await self.on_session_start()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.create_initialization_options(),
                )
        finally:
            await self.on_session_end()


async def run_stdio(state: ServerState) -> None:
    # No idle sweep here: the single stdio session lives until stdin closes
    try:
        await state.check_upstream()
        await StdioFrontDoor(state).run()
    finally:
        await state.close()


async def run_http(state: ServerState) -> None:
    settings = state.settings
    try:
        await state.check_upstream()
        config = uvicorn.Config(
            create_app(state),
            host=settings.http_host,
            port=settings.http_port,
            log_level=settings.log_level.lower(),
        )
        await uvicorn.Server(config).serve()
    finally:
        await state.close()


def main() -> None:
    try:
        settings = Settings.load_from_env()
    except InitializationError as exc:
        raise SystemExit(f"configuration error: {exc.message}")

    configure_logging(settings.log_level, settings.audit_log_path)
    logger.info(
        "Starting {} {} ({} transport)", SERVER_NAME, SERVER_VERSION, settings.transport
    )

    runner = run_http if settings.transport == "http" else run_stdio
    try:
        asyncio.run(runner(build_state(settings)))
    except InitializationError as exc:
        logger.error("Startup failed: {}", exc.message)
        raise SystemExit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
