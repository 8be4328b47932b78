"""Gemini chat session that streams responses for the stream reducer."""

import logging
from typing import Any, AsyncIterator, Iterable, Optional, Sequence, Union

from google import genai
from google.genai import types

from maps_bridge.config import Config
from maps_bridge.errors import ConfigurationError
from maps_bridge.tools import ToolDefinition, ToolInvocation

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTIONS = """You are the "Smart City Navigator," an expert AI assistant specializing in urban planning, sustainability, and smart city technologies. Your goal is to help users explore cities, analyze their "smartness," and discover opportunities for improvement.

Your operational workflow is as follows:
1.  **Visualize the City:** When a user asks to see a city (e.g., "Show me Berlin"), your FIRST action is to use the 'view-location' tool to display it on the map. When a user asks how to get somewhere, use the 'get-directions' tool.

2.  **Conduct a Smart City Analysis:** Immediately after the map tool call is sent, use your internal knowledge to analyze the city across these indicators:
    *   **Environmental Quality:** Air pollution levels, carbon footprint, green space availability.
    *   **Mobility & Transport:** Traffic congestion, public transportation efficiency and coverage.
    *   **Innovation & Technology:** Existing smart city projects, tech infrastructure.
    *   **Safety & Governance:** Crime statistics, public safety initiatives.

3.  **Present a Structured Report** with the following markdown sections:

    ### Smart City Assessment for [City Name]
    *   **Strengths:** 2-3 positive aspects.
    *   **Areas for Improvement:** 2-3 key challenges.

    ### Actionable Recommendations
    *   Specific, technology-driven solutions for the areas for improvement, each with its benefit.

    ### Estimated Budget Considerations
    *   A high-level budget range for one key recommendation.
    *   Always include this disclaimer: "Note: This is a rough, order-of-magnitude estimate. Actual project costs can vary significantly based on specific technologies, city size, and implementation details."

You have access to map tools. Use them intelligently to provide a visually-grounded experience for the user."""

_SCHEMA_TYPES = {
    "string": types.Type.STRING,
    "number": types.Type.NUMBER,
    "integer": types.Type.INTEGER,
    "boolean": types.Type.BOOLEAN,
}


def declared_name(name: str) -> str:
    """Model-side name for a tool; the client normalizes it back to kebab-case."""
    return name.replace("-", "_")


def function_declaration(definition: ToolDefinition) -> types.FunctionDeclaration:
    properties = {
        name: types.Schema(type=_SCHEMA_TYPES[spec.type], description=spec.description or None)
        for name, spec in definition.parameters.items()
    }
    return types.FunctionDeclaration(
        name=declared_name(definition.name),
        description=definition.description,
        parameters=types.Schema(
            type=types.Type.OBJECT,
            properties=properties,
            required=definition.required or None,
        ),
    )


def function_response_parts(responses: Iterable[tuple[ToolInvocation, dict[str, Any]]]) -> list[types.Part]:
    """Parts answering the model's function calls, named as it called them."""
    return [
        types.Part.from_function_response(name=declared_name(invocation.tool_name), response=response)
        for invocation, response in responses
    ]


class GeminiChatSession:
    """One multi-turn chat with the map tools declared.

    Automatic function calling is disabled: function calls come back as
    stream parts, the stream reducer routes them through the tool bridge, and
    the chat app sends their outcomes back with ``function_response_parts``.
    """

    def __init__(
        self,
        config: Config,
        tools: Sequence[ToolDefinition],
        *,
        client: Optional[genai.Client] = None,
        system_instruction: str = SYSTEM_INSTRUCTIONS,
    ):
        if client is None:
            if not config.gemini_api_key:
                raise ConfigurationError("GEMINI_API_KEY is not configured")
            client = genai.Client(api_key=config.gemini_api_key)
        self.model = config.model
        self._client = client
        self._chat = client.aio.chats.create(
            model=config.model,
            config=types.GenerateContentConfig(
                system_instruction=system_instruction,
                tools=[types.Tool(function_declarations=[function_declaration(t) for t in tools])],
                automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
                thinking_config=types.ThinkingConfig(include_thoughts=True),
            ),
        )

    async def send_message_stream(
        self, message: Union[str, list[types.Part]]
    ) -> AsyncIterator[types.GenerateContentResponse]:
        """Send a user message, or function responses, and yield the reply chunks."""
        logger.info("Sending message to %s", self.model)
        stream = await self._chat.send_message_stream(message)
        async for chunk in stream:
            yield chunk
