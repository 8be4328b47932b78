"""Console front end: wires the model session, the tool bridge and the map.

Usage:
    maps-bridge chat     interactive chat in the terminal
    maps-bridge serve    MCP server over stdio
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, AsyncIterator, Optional, Protocol, TextIO

import anyio
import anyio.to_thread

from maps_bridge.client import connect_in_process
from maps_bridge.config import Config
from maps_bridge.maps import Coordinates, GeoapifyClient, MapController
from maps_bridge.markdown import plain_text
from maps_bridge.reducer import ANSWER_PLACEHOLDER, ChatState, ChatView, MessageKind, Renderer, StreamReducer
from maps_bridge.server import ToolBridgeServer, log_map_update, run_stdio
from maps_bridge.session import GeminiChatSession, function_response_parts

logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit"}
# Follow-up turns allowed after the user's message before the reply is cut off.
MAX_TOOL_ROUNDS = 10


class ModelSession(Protocol):
    def send_message_stream(self, message: Any) -> AsyncIterator: ...


class ChatApp:
    """Accepts user messages and runs one turn at a time."""

    def __init__(self, view: ChatView, session: ModelSession, reducer: StreamReducer, render: Renderer):
        self.view = view
        self.session = session
        self.reducer = reducer
        self._render = render
        self._sending = False

    @property
    def busy(self) -> bool:
        return self._sending or not self.reducer.is_idle

    async def send(self, message: str) -> bool:
        """Run a turn for ``message``; returns False if it was not accepted."""
        message = message.strip()
        if not message:
            return False
        if self.busy:
            logger.warning("Turn in progress, rejecting message: %r", message)
            return False
        self._sending = True
        try:
            self.view.add_message(MessageKind.USER, await self._render(message))
            acc = await self.reducer.run_turn(self.session.send_message_stream(message))
            # Tool outcomes go back to the model so it can continue its answer.
            rounds = 0
            parts = function_response_parts(acc.function_responses())
            while parts:
                if rounds == MAX_TOOL_ROUNDS:
                    logger.warning("Stopped after %d tool rounds", MAX_TOOL_ROUNDS)
                    break
                rounds += 1
                acc = await self.reducer.run_turn(self.session.send_message_stream(parts))
                parts = function_response_parts(acc.function_responses())
        finally:
            self._sending = False
        return True


class ConsoleChatView:
    """Writes the chat to a text stream, printing only what is new."""

    def __init__(self, out: Optional[TextIO] = None):
        self.out = out or sys.stdout
        self._answer = ""
        self._thought = ""

    def _write(self, text: str):
        self.out.write(text)
        self.out.flush()

    def set_chat_state(self, state: ChatState):
        if state is ChatState.IDLE:
            if self._answer:
                self._write("\n")
            self._answer = self._thought = ""

    def add_message(self, kind: MessageKind, html: str):
        if kind is MessageKind.USER:
            return
        prefix = "!" if kind is MessageKind.ERROR else "*"
        self._write(f"\n{prefix} {html}\n")

    def render_thought(self, html: str, *, visible: bool, expanded: bool):
        if not expanded or not html.startswith(self._thought):
            return
        delta = html[len(self._thought):].strip()
        self._thought = html
        if delta:
            self._write(f"  ({delta})\n")

    def render_answer(self, html: str):
        if html in ("", ANSWER_PLACEHOLDER):
            return
        if html.startswith(self._answer):
            self._write(html[len(self._answer):])
        else:
            self._write(f"\n{html}")
        self._answer = html

    def scroll_to_end(self):
        pass


class ConsoleMapSurface:
    def __init__(self, out: Optional[TextIO] = None):
        self.out = out or sys.stdout

    def clear(self):
        pass

    def fly_to(self, point: Coordinates, zoom: int):
        print(f"[map] centered on {point.lat:.5f}, {point.lon:.5f} (zoom {zoom})", file=self.out)

    def add_marker(self, point: Coordinates, label: Optional[str] = None):
        name = f"marker {label}" if label else "marker"
        print(f"[map] {name} at {point.lat:.5f}, {point.lon:.5f}", file=self.out)

    def show_route(self, feature: dict, origin: Coordinates, destination: Coordinates):
        props = feature.get("properties", {})
        distance = props.get("distance")
        summary = f" ({distance / 1000:.1f} km)" if isinstance(distance, (int, float)) else ""
        print(f"[map] route {origin.lat:.4f},{origin.lon:.4f} -> {destination.lat:.4f},{destination.lon:.4f}{summary}", file=self.out)


async def run_chat(config: Config):
    view = ConsoleChatView()
    render = plain_text
    geo = GeoapifyClient(config)

    async def report_map_error(text: str):
        view.add_message(MessageKind.ERROR, await render(text))

    controller = MapController(ConsoleMapSurface(), geo, report_map_error)
    server = ToolBridgeServer(controller.sink)

    async with anyio.create_task_group() as tg:
        tg.start_soon(controller.run)
        try:
            async with connect_in_process(server) as client:
                tools = await client.list_tools()
                session = GeminiChatSession(config, tools)
                app = ChatApp(view, session, StreamReducer(view, client, render), render)
                print(f"Chatting with {config.model}. Type 'exit' to quit.")
                while True:
                    try:
                        line = await anyio.to_thread.run_sync(input, "> ")
                    except EOFError:
                        break
                    if line.strip().lower() in EXIT_COMMANDS:
                        break
                    await app.send(line)
        finally:
            controller.close()
            await geo.aclose()


def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(prog="maps-bridge", description="Chat with a map-aware assistant.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("chat", help="Interactive chat in the terminal")
    subparsers.add_parser("serve", help="Run the map tools as an MCP server over stdio")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if args.command == "serve":
        asyncio.run(run_stdio(ToolBridgeServer(log_map_update)))
        return

    config = Config.load()
    if not config.gemini_api_key:
        parser.error("GEMINI_API_KEY is not configured (environment or ~/.maps-bridge/config.json)")
    try:
        asyncio.run(run_chat(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
