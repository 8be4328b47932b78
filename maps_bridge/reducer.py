"""Fold a streamed model response into chat UI updates.

A turn consumes the chunks yielded by the model session. Each chunk holds
candidates whose parts are thoughts, answer text or function calls. Parts are
applied in delivered order: text accumulates into the turn's thought and
answer, function calls are announced in the chat and dispatched through the
tool bridge, and every part triggers a re-render so a slow stream shows
progress. Presentation goes through the narrow ``ChatView`` protocol; the
reducer never builds UI elements itself.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, Awaitable, Callable, Iterator, Mapping, Optional, Protocol

import anyio
from anyio.abc import TaskGroup

from maps_bridge.errors import (
    BridgeError,
    StreamSourceError,
    ToolExecutionError,
    TurnInProgressError,
    extract_error_message,
)
from maps_bridge.markdown import MarkdownRenderer
from maps_bridge.tools import ToolInvocation, ToolResult, normalize_tool_name

logger = logging.getLogger(__name__)

ANSWER_PLACEHOLDER = "..."
DONE_PLACEHOLDER = "Done."
FUNCTION_CALL_HEADER = "Calling function:"


class ChatState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    THINKING = "thinking"
    EXECUTING = "executing"


class TurnPhase(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZING = "finalizing"


class MessageKind(str, Enum):
    USER = "user"
    FUNCTION_CALL = "function-call"
    ERROR = "error"


class ChatView(Protocol):
    """Presentation adapter the reducer drives."""

    def set_chat_state(self, state: ChatState) -> None: ...

    def add_message(self, kind: MessageKind, html: str) -> None: ...

    def render_thought(self, html: str, *, visible: bool, expanded: bool) -> None: ...

    def render_answer(self, html: str) -> None: ...

    def scroll_to_end(self) -> None: ...


class ToolCaller(Protocol):
    async def call_tool(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> ToolResult: ...


Renderer = Callable[[str], Awaitable[str]]


@dataclass
class TurnAccumulator:
    """State of one turn. Thought and answer text only ever grow."""

    thought_text: str = ""
    answer_text: str = ""
    thinking_visible: bool = False
    thinking_expanded: bool = False
    producing_content: bool = False
    function_calls: list[ToolInvocation] = field(default_factory=list)
    # Keyed by index into function_calls; filled in as dispatches finish.
    tool_responses: dict[int, dict[str, Any]] = field(default_factory=dict)
    errors: list[BridgeError] = field(default_factory=list)
    placeholder: Optional[str] = None

    def append_thought(self, text: str):
        self.thought_text = f"{self.thought_text} {text}" if self.thought_text else text

    def append_answer(self, text: str):
        self.answer_text += text

    @property
    def display_answer(self) -> str:
        return self.answer_text if self.answer_text.strip() else self.placeholder or ""

    def function_responses(self) -> Iterator[tuple[ToolInvocation, dict[str, Any]]]:
        """Tool outcomes to hand back to the model, in function-call order."""
        for index, invocation in enumerate(self.function_calls):
            if index in self.tool_responses:
                yield invocation, self.tool_responses[index]


@dataclass(frozen=True)
class Fragment:
    kind: str  # "function_call", "thought" or "text"
    text: str = ""
    name: str = ""
    arguments: Mapping[str, Any] = field(default_factory=dict)


def _get(obj: Any, *names: str) -> Any:
    for name in names:
        value = obj.get(name) if isinstance(obj, Mapping) else getattr(obj, name, None)
        if value is not None:
            return value
    return None


def iter_fragments(chunk: Any) -> Iterator[Fragment]:
    """Yield the fragments of a chunk in delivered order.

    Accepts google-genai response objects (``part.function_call``,
    ``part.thought`` as a flag on a text part) as well as plain mappings
    (``functionCall``, ``thought`` holding the text, ``text``).
    """
    for candidate in _get(chunk, "candidates") or []:
        content = _get(candidate, "content")
        for part in (_get(content, "parts") if content is not None else None) or []:
            call = _get(part, "function_call", "functionCall")
            if call is not None:
                yield Fragment(
                    kind="function_call",
                    name=_get(call, "name") or "",
                    arguments=dict(_get(call, "args", "arguments") or {}),
                )
            thought = _get(part, "thought")
            text = _get(part, "text")
            if isinstance(thought, str) and thought:
                yield Fragment(kind="thought", text=thought)
            elif thought is True and text:
                yield Fragment(kind="thought", text=text)
            elif text:
                yield Fragment(kind="text", text=text)


def describe_call(invocation: ToolInvocation) -> str:
    payload = {"name": invocation.tool_name, "arguments": dict(invocation.arguments)}
    return f"{FUNCTION_CALL_HEADER}\n```json\n{json.dumps(payload, indent=2)}\n```"


class StreamReducer:
    """Runs turns: Idle -> Streaming -> Finalizing -> Idle."""

    def __init__(self, view: ChatView, caller: ToolCaller, render: Optional[Renderer] = None):
        self._view = view
        self._caller = caller
        self._render = render or MarkdownRenderer().render
        self._phase = TurnPhase.IDLE

    @property
    def phase(self) -> TurnPhase:
        return self._phase

    @property
    def is_idle(self) -> bool:
        return self._phase is TurnPhase.IDLE

    async def run_turn(self, chunks: AsyncIterable[Any]) -> TurnAccumulator:
        """Consume one response stream and return the turn's final state.

        A failing stream is reported as an error message; content already
        rendered is kept and the turn is finalized as usual.
        """
        if not self.is_idle:
            raise TurnInProgressError()

        acc = TurnAccumulator()
        self._phase = TurnPhase.STREAMING
        try:
            self._view.set_chat_state(ChatState.GENERATING)
            self._view.render_answer(ANSWER_PLACEHOLDER)
            async with anyio.create_task_group() as tg:
                try:
                    async for chunk in chunks:
                        for fragment in iter_fragments(chunk):
                            await self._apply(fragment, acc, tg)
                except Exception as e:
                    await self._report_stream_error(e, acc)

            self._phase = TurnPhase.FINALIZING
            await self._finalize(acc)
        finally:
            self._phase = TurnPhase.IDLE
            self._view.set_chat_state(ChatState.IDLE)
        return acc

    async def _apply(self, fragment: Fragment, acc: TurnAccumulator, tg: TaskGroup):
        if fragment.kind == "function_call":
            invocation = ToolInvocation(
                tool_name=normalize_tool_name(fragment.name),
                arguments=fragment.arguments,
            )
            logger.info("Function call: %s %s", invocation.tool_name, dict(invocation.arguments))
            index = len(acc.function_calls)
            acc.function_calls.append(invocation)
            self._view.add_message(MessageKind.FUNCTION_CALL, await self._render(describe_call(invocation)))
            # Not awaited here: the stream keeps flowing while the tool runs.
            tg.start_soon(self._dispatch, index, invocation, acc)
        elif fragment.kind == "thought":
            self._view.set_chat_state(ChatState.THINKING)
            acc.append_thought(fragment.text)
            acc.thinking_visible = acc.thinking_expanded = True
            self._view.render_thought(await self._render(acc.thought_text), visible=True, expanded=True)
        else:
            self._view.set_chat_state(ChatState.EXECUTING)
            acc.append_answer(fragment.text)
            acc.producing_content = True
            self._view.render_answer(await self._render(acc.answer_text))
        self._view.scroll_to_end()

    async def _dispatch(self, index: int, invocation: ToolInvocation, acc: TurnAccumulator):
        try:
            result = await self._caller.call_tool(invocation.tool_name, invocation.arguments)
        except BridgeError as e:
            logger.warning("Tool %s failed: %s", invocation.tool_name, e)
            error = e
        except Exception as e:
            logger.exception("Tool %s failed unexpectedly", invocation.tool_name)
            error = ToolExecutionError(extract_error_message(e))
        else:
            logger.info("Tool %s: %s", invocation.tool_name, result.text)
            acc.tool_responses[index] = {"output": result.text}
            return
        acc.tool_responses[index] = {"error": error.message}
        await self._show_error(error, acc)

    async def _report_stream_error(self, error: Exception, acc: TurnAccumulator):
        message = extract_error_message(error)
        logger.error("Model stream failed: %s", message, exc_info=error)
        await self._show_error(StreamSourceError(message), acc)

    async def _show_error(self, error: BridgeError, acc: TurnAccumulator):
        acc.errors.append(error)
        self._view.add_message(MessageKind.ERROR, await self._render(f"Error: {error.message}"))
        self._view.scroll_to_end()

    async def _finalize(self, acc: TurnAccumulator):
        if acc.thinking_expanded:
            acc.thinking_visible = bool(acc.thought_text)
            acc.thinking_expanded = False
            self._view.render_thought(
                await self._render(acc.thought_text),
                visible=acc.thinking_visible,
                expanded=False,
            )

        if not acc.answer_text.strip():
            if acc.function_calls:
                self._view.render_answer("")
            else:
                acc.placeholder = DONE_PLACEHOLDER
                self._view.render_answer(await self._render(DONE_PLACEHOLDER))
