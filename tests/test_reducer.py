"""Tests for the streaming response reducer."""

from unittest.mock import AsyncMock, MagicMock

import anyio
import pytest
from google.genai import types

from maps_bridge.errors import (
    SchemaViolationError,
    StreamSourceError,
    ToolExecutionError,
    TurnInProgressError,
)
from maps_bridge.client import connect_in_process
from maps_bridge.markdown import plain_text
from maps_bridge.reducer import (
    ChatState,
    MessageKind,
    StreamReducer,
    TurnPhase,
    iter_fragments,
)
from maps_bridge.server import ToolBridgeServer
from maps_bridge.tools import Location, ToolResult


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def chunk(*parts):
    return {"candidates": [{"content": {"parts": list(parts)}}]}


def call(name, **args):
    return {"functionCall": {"name": name, "args": args}}


async def stream_of(*chunks, error=None):
    for c in chunks:
        yield c
    if error is not None:
        raise error


@pytest.fixture
def caller():
    c = MagicMock()
    c.call_tool = AsyncMock(return_value=ToolResult.from_text("ok"))
    return c


@pytest.fixture
def reducer(view, caller):
    return StreamReducer(view, caller, plain_text)


# ---------------------------------------------------------------------------
# Accumulation
# ---------------------------------------------------------------------------

class TestAccumulation:
    @pytest.mark.anyio
    async def test_thought_then_text(self, reducer, view):
        acc = await reducer.run_turn(stream_of(
            chunk({"thought": "a"}), chunk({"text": "b"}), chunk({"text": "c"}),
        ))
        assert acc.answer_text == "bc"
        assert acc.thought_text == "a"
        assert acc.thinking_visible
        assert acc.producing_content
        assert view.answers == ["...", "b", "bc"]
        assert view.thoughts == [("a", True, True), ("a", True, False)]

    @pytest.mark.anyio
    async def test_thoughts_are_space_separated(self, reducer):
        acc = await reducer.run_turn(stream_of(chunk({"thought": "first"}, {"thought": "second"})))
        assert acc.thought_text == "first second"

    @pytest.mark.anyio
    async def test_chat_state_transitions(self, reducer, view):
        await reducer.run_turn(stream_of(
            chunk({"thought": "a"}), chunk({"text": "b"}), chunk({"text": "c"}),
        ))
        assert view.states == [
            ChatState.GENERATING,
            ChatState.THINKING,
            ChatState.EXECUTING,
            ChatState.EXECUTING,
            ChatState.IDLE,
        ]

    @pytest.mark.anyio
    async def test_every_fragment_renders_and_scrolls(self, reducer, view):
        await reducer.run_turn(stream_of(chunk({"text": "x"}, {"text": "y"}), chunk({"text": "z"})))
        assert view.answers == ["...", "x", "xy", "xyz"]
        assert view.scrolls == 3

    @pytest.mark.anyio
    async def test_parts_keep_delivered_order(self, reducer, view):
        await reducer.run_turn(stream_of(
            chunk({"text": "x"}, call("view_location", location="Paris"), {"text": "y"}),
        ))
        kinds = [e[0] if e[0] != "message" else e[1] for e in view.events]
        assert kinds == ["answer", "answer", MessageKind.FUNCTION_CALL, "answer"]

    @pytest.mark.anyio
    async def test_answer_only_grows(self, reducer, view):
        await reducer.run_turn(stream_of(*(chunk({"text": t}) for t in ("The ", "quick ", "fox"))))
        rendered = view.answers[1:]
        for before, after in zip(rendered, rendered[1:]):
            assert after.startswith(before)

    @pytest.mark.anyio
    async def test_empty_stream_gets_placeholder(self, reducer, view):
        acc = await reducer.run_turn(stream_of())
        assert acc.placeholder == "Done."
        assert acc.display_answer == "Done."
        assert acc.answer_text == ""
        assert view.answers[-1] == "Done."
        assert MessageKind.FUNCTION_CALL not in view.kinds()
        assert view.thoughts == []

    @pytest.mark.anyio
    async def test_whitespace_answer_displays_placeholder(self, reducer, view):
        acc = await reducer.run_turn(stream_of(chunk({"text": "  "})))
        assert acc.answer_text == "  "
        assert acc.display_answer == "Done."
        assert view.answers[-1] == acc.display_answer

    @pytest.mark.anyio
    async def test_fresh_accumulator_per_turn(self, reducer):
        first = await reducer.run_turn(stream_of(chunk({"text": "one"})))
        second = await reducer.run_turn(stream_of(chunk({"text": "two"})))
        assert first is not second
        assert second.answer_text == "two"


# ---------------------------------------------------------------------------
# Function calls
# ---------------------------------------------------------------------------

class TestFunctionCalls:
    @pytest.mark.anyio
    async def test_call_is_announced_and_dispatched(self, reducer, view, caller):
        acc = await reducer.run_turn(stream_of(chunk(call("getDirections", origin="A", destination="B"))))
        caller.call_tool.assert_awaited_once_with("get-directions", {"origin": "A", "destination": "B"})
        assert acc.function_calls[0].tool_name == "get-directions"
        kind, text = view.messages[0]
        assert kind is MessageKind.FUNCTION_CALL
        assert text.startswith("Calling function:\n```json\n")
        assert '"name": "get-directions"' in text
        assert '"origin": "A"' in text

    @pytest.mark.anyio
    async def test_answer_cleared_instead_of_placeholder(self, reducer, view):
        acc = await reducer.run_turn(stream_of(chunk(call("view_location", location="Paris"))))
        assert acc.placeholder is None
        assert view.answers == ["...", ""]

    @pytest.mark.anyio
    async def test_call_then_stream_error(self, reducer, view):
        acc = await reducer.run_turn(stream_of(
            chunk(call("view_location", location="Paris")),
            error=RuntimeError("connection reset"),
        ))
        assert view.kinds() == [MessageKind.FUNCTION_CALL, MessageKind.ERROR]
        assert view.messages[1][1] == "Error: connection reset"
        assert reducer.phase is TurnPhase.IDLE
        assert view.states.count(ChatState.IDLE) == 1
        assert view.states[-1] is ChatState.IDLE
        assert isinstance(acc.errors[0], StreamSourceError)

    @pytest.mark.anyio
    async def test_stream_not_blocked_by_tool_call(self, reducer, caller):
        release = anyio.Event()

        async def slow_call(name, arguments=None):
            await release.wait()
            return ToolResult.from_text("ok")

        caller.call_tool.side_effect = slow_call

        async def stream():
            yield chunk(call("view_location", location="Paris"))
            yield chunk({"text": "after the call"})
            release.set()

        with anyio.fail_after(1):
            acc = await reducer.run_turn(stream())
        assert acc.answer_text == "after the call"
        caller.call_tool.assert_awaited_once()

    @pytest.mark.anyio
    async def test_tool_error_is_shown(self, reducer, view, caller):
        caller.call_tool.side_effect = SchemaViolationError("location")
        acc = await reducer.run_turn(stream_of(chunk(call("view_location"))))
        assert view.kinds() == [MessageKind.FUNCTION_CALL, MessageKind.ERROR]
        assert view.messages[1][1] == "Error: Invalid or missing argument: location"
        assert isinstance(acc.errors[0], SchemaViolationError)

    @pytest.mark.anyio
    async def test_unexpected_tool_failure_is_shown(self, reducer, view, caller):
        caller.call_tool.side_effect = ValueError("bad state")
        acc = await reducer.run_turn(stream_of(chunk(call("view_location", location="X"))))
        assert view.messages[-1] == (MessageKind.ERROR, "Error: bad state")
        assert isinstance(acc.errors[0], ToolExecutionError)

    @pytest.mark.anyio
    async def test_outcomes_recorded_in_call_order(self, reducer, caller):
        caller.call_tool.side_effect = [
            ToolResult.from_text("Navigating to: Oslo"),
            SchemaViolationError("destination"),
        ]
        acc = await reducer.run_turn(stream_of(chunk(
            call("view_location", location="Oslo"),
            call("get_directions", origin="Oslo"),
        )))
        assert [(inv.tool_name, response) for inv, response in acc.function_responses()] == [
            ("view-location", {"output": "Navigating to: Oslo"}),
            ("get-directions", {"error": "Invalid or missing argument: destination"}),
        ]

    @pytest.mark.anyio
    async def test_calls_reach_the_sink_through_the_bridge(self, view):
        sink = MagicMock()
        async with connect_in_process(ToolBridgeServer(sink)) as client:
            reducer = StreamReducer(view, client, plain_text)
            with anyio.fail_after(2):
                acc = await reducer.run_turn(stream_of(
                    chunk({"text": "Here is Paris."}, call("view_location", location="Paris")),
                ))
        sink.assert_called_once_with(Location(query="Paris"))
        assert acc.tool_responses == {0: {"output": "Navigating to: Paris"}}
        assert acc.errors == []
        assert view.kinds() == [MessageKind.FUNCTION_CALL]


# ---------------------------------------------------------------------------
# Stream errors
# ---------------------------------------------------------------------------

class TestStreamErrors:
    @pytest.mark.anyio
    async def test_embedded_json_message_is_extracted(self, reducer, view):
        error = RuntimeError('Error calling tool: {"error":{"message":"quota exceeded"}}')
        await reducer.run_turn(stream_of(error=error))
        assert view.messages == [(MessageKind.ERROR, "Error: quota exceeded")]

    @pytest.mark.anyio
    async def test_rendered_content_survives(self, reducer, view):
        acc = await reducer.run_turn(stream_of(
            chunk({"thought": "hmm"}), chunk({"text": "partial"}),
            error=RuntimeError("network down"),
        ))
        assert acc.answer_text == "partial"
        assert acc.thought_text == "hmm"
        assert view.answers[-1] == "partial"
        assert view.messages == [(MessageKind.ERROR, "Error: network down")]

    @pytest.mark.anyio
    async def test_error_before_first_chunk_still_finalizes(self, reducer, view):
        acc = await reducer.run_turn(stream_of(error=RuntimeError("401")))
        assert acc.placeholder == "Done."
        assert view.states == [ChatState.GENERATING, ChatState.IDLE]


# ---------------------------------------------------------------------------
# Turn lifecycle
# ---------------------------------------------------------------------------

class TestTurnLifecycle:
    @pytest.mark.anyio
    async def test_second_turn_rejected_while_streaming(self, reducer):
        gate = anyio.Event()

        async def stream():
            yield chunk({"text": "a"})
            await gate.wait()

        async with anyio.create_task_group() as tg:
            tg.start_soon(reducer.run_turn, stream())
            with anyio.fail_after(1):
                while reducer.is_idle:
                    await anyio.sleep(0)
            assert reducer.phase is TurnPhase.STREAMING
            with pytest.raises(TurnInProgressError):
                await reducer.run_turn(stream_of(chunk({"text": "b"})))
            gate.set()
        assert reducer.is_idle

    @pytest.mark.anyio
    async def test_default_renderer_is_markdown(self, view, caller):
        reducer = StreamReducer(view, caller)
        await reducer.run_turn(stream_of(chunk({"text": "**bold**"})))
        assert view.answers[-1] == "<p><strong>bold</strong></p>\n"


# ---------------------------------------------------------------------------
# Fragment extraction
# ---------------------------------------------------------------------------

class TestIterFragments:
    def test_genai_response_objects(self):
        response = types.GenerateContentResponse(candidates=[
            types.Candidate(content=types.Content(role="model", parts=[
                types.Part(text="Planning the route", thought=True),
                types.Part(function_call=types.FunctionCall(
                    name="get_directions", args={"origin": "A", "destination": "B"},
                )),
                types.Part(text="Here you go"),
            ])),
        ])
        fragments = list(iter_fragments(response))
        assert [f.kind for f in fragments] == ["thought", "function_call", "text"]
        assert fragments[0].text == "Planning the route"
        assert fragments[1].name == "get_directions"
        assert fragments[1].arguments == {"origin": "A", "destination": "B"}

    def test_chunk_without_candidates(self):
        assert list(iter_fragments({"candidates": None})) == []
        assert list(iter_fragments({"candidates": [{"content": None}]})) == []

    def test_empty_text_is_skipped(self):
        assert list(iter_fragments(chunk({"text": ""}))) == []
