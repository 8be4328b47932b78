"""Model-facing side of the bridge: an MCP client over a transport endpoint."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping, Optional

import anyio
from mcp import ClientSession
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED, Implementation, TextContent

from maps_bridge import __version__
from maps_bridge.errors import ToolExecutionError, TransportClosedError, decode_error
from maps_bridge.server import ToolBridgeServer
from maps_bridge.tools import TextBlock, ToolDefinition, ToolResult, normalize_tool_name
from maps_bridge.transport import Transport, create_linked_pair

logger = logging.getLogger(__name__)

CLIENT_NAME = "maps-bridge-client"

_CLOSED_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)


class ToolBridgeClient:
    """Lists and calls the server's tools on behalf of the model runtime."""

    def __init__(self, session: ClientSession, endpoint: Transport):
        self._session = session
        self._endpoint = endpoint

    @classmethod
    @asynccontextmanager
    async def connect(cls, endpoint: Transport, *, name: str = CLIENT_NAME) -> AsyncIterator["ToolBridgeClient"]:
        """Open and initialize an MCP session on ``endpoint``."""
        client_info = Implementation(name=name, version=__version__)
        async with ClientSession(endpoint.read_stream, endpoint.write_stream, client_info=client_info) as session:
            await session.initialize()
            logger.debug("Client session initialized on %r", endpoint)
            yield cls(session, endpoint)

    @property
    def closed(self) -> bool:
        return self._endpoint.closed

    async def list_tools(self) -> list[ToolDefinition]:
        self._check_open()
        try:
            result = await self._session.list_tools()
        except McpError as e:
            raise self._translate(e) from e
        except _CLOSED_ERRORS as e:
            raise TransportClosedError() from e
        return [
            ToolDefinition.from_input_schema(tool.name, tool.description or "", tool.inputSchema)
            for tool in result.tools
        ]

    async def call_tool(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> ToolResult:
        """Call a tool by name, normalizing model-side naming first.

        Raises UnknownToolError, SchemaViolationError, TransportClosedError or
        ToolExecutionError.
        """
        self._check_open()
        tool_name = normalize_tool_name(name)
        try:
            result = await self._session.call_tool(tool_name, dict(arguments or {}))
        except McpError as e:
            raise self._translate(e) from e
        except _CLOSED_ERRORS as e:
            raise TransportClosedError() from e

        texts = [block.text for block in result.content if isinstance(block, TextContent)]
        if result.isError:
            raise decode_error("\n".join(texts))
        return ToolResult(tuple(TextBlock(text) for text in texts))

    def _check_open(self):
        if self._endpoint.closed:
            raise TransportClosedError()

    @staticmethod
    def _translate(error: McpError) -> Exception:
        if error.error.code == CONNECTION_CLOSED:
            return TransportClosedError(error.error.message)
        return ToolExecutionError(error.error.message)


@asynccontextmanager
async def connect_in_process(server: ToolBridgeServer) -> AsyncIterator[ToolBridgeClient]:
    """Run ``server`` on one end of a linked pair and yield a client for the other."""
    client_end, server_end = create_linked_pair()
    async with anyio.create_task_group() as tg:
        tg.start_soon(server.serve, server_end)
        try:
            async with ToolBridgeClient.connect(client_end) as client:
                yield client
        finally:
            client_end.close()
            tg.cancel_scope.cancel()
