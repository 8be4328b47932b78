#!/usr/bin/env python3
"""
Maps Bridge - MCP server exposing map tools to a language model.

Tools:
- view-location: show a city, address or landmark on the map
- get-directions: show a route between two places

Every successful call forwards a MapUpdateRequest to the sink callback the
server was built with; the map UI listens there. The server can be bound to
an in-process transport (see maps_bridge.transport) or run over stdio for
external MCP hosts.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

import anyio
from mcp.server import InitializationOptions, Server
from mcp.server.stdio import stdio_server
from mcp.types import ServerCapabilities, TextContent, Tool, ToolsCapability

from maps_bridge import __version__
from maps_bridge.errors import BridgeError, ToolExecutionError, encode_error
from maps_bridge.tools import (
    GET_DIRECTIONS,
    VIEW_LOCATION,
    Location,
    MapUpdateRequest,
    Route,
    ToolDefinition,
    ToolInvocation,
    ToolRegistry,
    ToolResult,
    ValidatedArguments,
)
from maps_bridge.transport import Transport

logger = logging.getLogger(__name__)

SERVER_NAME = "maps-bridge"

Sink = Callable[[MapUpdateRequest], None]


@dataclass(frozen=True)
class ToolOutcome:
    update: MapUpdateRequest
    acknowledgment: str


ToolHandler = Callable[[ValidatedArguments], Union[ToolOutcome, Awaitable[ToolOutcome]]]


class _ToolCallFailed(Exception):
    """Carries an encoded bridge error out through the MCP error result."""


def view_location(arguments: ValidatedArguments) -> ToolOutcome:
    location = arguments["location"]
    return ToolOutcome(Location(query=location), f"Navigating to: {location}")


def get_directions(arguments: ValidatedArguments) -> ToolOutcome:
    origin, destination = arguments["origin"], arguments["destination"]
    return ToolOutcome(
        Route(origin=origin, destination=destination),
        f"Navigating from {origin} to {destination}",
    )


class ToolBridgeServer:
    """Validates tool invocations, runs their handlers and notifies the sink."""

    def __init__(self, sink: Sink, *, name: str = SERVER_NAME, version: str = __version__):
        self.name = name
        self.version = version
        self.registry = ToolRegistry()
        self._sink = sink
        self._handlers: dict[str, ToolHandler] = {}
        self.add_tool(VIEW_LOCATION, view_location)
        self.add_tool(GET_DIRECTIONS, get_directions)

    def add_tool(self, definition: ToolDefinition, handler: ToolHandler):
        self.registry.register(definition)
        self._handlers[definition.name] = handler

    async def handle(self, invocation: ToolInvocation) -> ToolResult:
        """Validate and execute one invocation.

        Validation errors propagate unchanged; the sink is only reached once
        the handler has succeeded.
        """
        arguments = self.registry.validate(invocation)
        handler = self._handlers[invocation.tool_name]
        try:
            outcome = handler(arguments)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except BridgeError:
            raise
        except Exception as e:
            raise ToolExecutionError(f"Tool {invocation.tool_name} failed: {e}") from e

        self._notify(outcome.update)
        return ToolResult.from_text(outcome.acknowledgment)

    def _notify(self, update: MapUpdateRequest):
        # Best-effort UI notification, not part of the tool call's result.
        try:
            self._sink(update)
        except Exception:
            logger.exception("Map update sink failed for %r", update)

    def build_mcp_server(self) -> Server:
        server = Server(self.name, version=self.version)

        @server.list_tools()
        async def list_tools():
            return [
                Tool(
                    name=definition.name,
                    description=definition.description,
                    inputSchema=definition.input_schema(),
                )
                for definition in self.registry.describe()
            ]

        # Input is validated by the registry so that clients get typed errors.
        @server.call_tool(validate_input=False)
        async def call_tool(name: str, arguments: dict):
            logger.info("Tool call: %s %s", name, arguments)
            try:
                result = await self.handle(ToolInvocation(tool_name=name, arguments=arguments or {}))
            except BridgeError as e:
                logger.warning("Tool call %s rejected: %s", name, e)
                raise _ToolCallFailed(encode_error(e)) from e
            return [TextContent(type="text", text=block.value) for block in result.content]

        return server

    def initialization_options(self) -> InitializationOptions:
        return InitializationOptions(
            server_name=self.name,
            server_version=self.version,
            capabilities=ServerCapabilities(tools=ToolsCapability()),
        )

    async def serve(self, endpoint: Transport):
        """Run the accept loop on a transport endpoint until it is closed.

        The MCP session runs on the endpoint's raw streams; between messages
        the loop is parked on the read stream.
        """
        server = self.build_mcp_server()
        logger.info("%s %s serving on %r", self.name, self.version, endpoint)
        try:
            await server.run(endpoint.read_stream, endpoint.write_stream, self.initialization_options())
        except* (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.info("Transport closed while replying; stopping %s", self.name)
        logger.info("%s stopped", self.name)


def log_map_update(update: MapUpdateRequest):
    logger.info("Map update: %r", update)


async def run_stdio(bridge: ToolBridgeServer):
    """Serve the bridge over stdin/stdout for an external MCP host."""
    async with stdio_server() as (read_stream, write_stream):
        server = bridge.build_mcp_server()
        await server.run(read_stream, write_stream, bridge.initialization_options())


def main():
    # stdout is the MCP channel, logs go to stderr
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    asyncio.run(run_stdio(ToolBridgeServer(log_map_update)))


if __name__ == "__main__":
    main()
