"""Tool definitions, the tool registry and the map update payloads."""

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Union

from maps_bridge.errors import DuplicateToolError, SchemaViolationError, UnknownToolError


# JSON schema primitive -> accepted Python types
_PRIMITIVES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
}

_UNDERSCORE = re.compile(r"_+")
_LOWER_UPPER = re.compile(r"([a-z0-9])([A-Z])")
_UPPER_RUN = re.compile(r"([A-Z])([A-Z][a-z])")


def normalize_tool_name(name: str) -> str:
    """Convert a model-side tool name to the registry's kebab-case form.

    ``getDirections``, ``get_directions`` and ``GET_DIRECTIONS`` all become
    ``get-directions``. The result contains no uppercase letters or
    underscores, so normalizing twice changes nothing.
    """
    name = _UNDERSCORE.sub("-", name)
    name = _LOWER_UPPER.sub(r"\1-\2", name)
    name = _UPPER_RUN.sub(r"\1-\2", name)
    return name.lower()


@dataclass(frozen=True)
class ParamSpec:
    type: str = "string"
    required: bool = True
    description: str = ""


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: Mapping[str, ParamSpec] = field(default_factory=dict)

    def __post_init__(self):
        for spec in self.parameters.values():
            if spec.type not in _PRIMITIVES:
                raise ValueError(f"Unsupported parameter type for {self.name}: {spec.type}")
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    @property
    def required(self) -> list[str]:
        return [name for name, spec in self.parameters.items() if spec.required]

    def input_schema(self) -> dict:
        """JSON schema advertised to MCP clients."""
        properties = {}
        for name, spec in self.parameters.items():
            prop = {"type": spec.type}
            if spec.description:
                prop["description"] = spec.description
            properties[name] = prop
        schema: dict[str, Any] = {"type": "object", "properties": properties}
        if self.required:
            schema["required"] = self.required
        return schema

    @classmethod
    def from_input_schema(cls, name: str, description: str, schema: Mapping) -> "ToolDefinition":
        required = set(schema.get("required", []))
        parameters = {
            prop_name: ParamSpec(
                type=prop.get("type", "string"),
                required=prop_name in required,
                description=prop.get("description", ""),
            )
            for prop_name, prop in schema.get("properties", {}).items()
        }
        return cls(name=name, description=description or "", parameters=parameters)


@dataclass(frozen=True)
class ToolInvocation:
    tool_name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TextBlock:
    value: str
    kind: str = "text"


@dataclass(frozen=True)
class ToolResult:
    content: tuple[TextBlock, ...] = ()

    @classmethod
    def from_text(cls, *texts: str) -> "ToolResult":
        return cls(tuple(TextBlock(t) for t in texts))

    @property
    def text(self) -> str:
        return "\n".join(block.value for block in self.content if block.kind == "text")


@dataclass(frozen=True)
class Location:
    query: str


@dataclass(frozen=True)
class Route:
    origin: str
    destination: str


MapUpdateRequest = Union[Location, Route]

# Arguments that passed validation; read-only, declared fields only.
ValidatedArguments = Mapping[str, Any]


def _conforms(value: Any, type_name: str) -> bool:
    if type_name != "boolean" and isinstance(value, bool):
        return False
    return isinstance(value, _PRIMITIVES[type_name])


class ToolRegistry:
    """Registered tool definitions, in registration order."""

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, definition: ToolDefinition):
        if definition.name in self._tools:
            raise DuplicateToolError(definition.name)
        self._tools[definition.name] = definition

    def get(self, name: str) -> ToolDefinition:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def describe(self) -> Iterator[ToolDefinition]:
        yield from self._tools.values()

    def validate(self, invocation: ToolInvocation) -> ValidatedArguments:
        """Check an invocation against its tool's schema.

        Raises UnknownToolError for an unregistered name and SchemaViolationError
        naming the first missing or mistyped field. Undeclared arguments are
        dropped.
        """
        definition = self.get(invocation.tool_name)
        arguments = invocation.arguments or {}
        validated = {}
        for name, spec in definition.parameters.items():
            if name not in arguments or arguments[name] is None:
                if spec.required:
                    raise SchemaViolationError(name, f"Missing required argument: {name}")
                continue
            value = arguments[name]
            if not _conforms(value, spec.type):
                raise SchemaViolationError(
                    name, f"Argument {name} must be of type {spec.type}, got {type(value).__name__}"
                )
            validated[name] = value
        return MappingProxyType(validated)


VIEW_LOCATION = ToolDefinition(
    name="view-location",
    description=(
        "View a specific geographical location on the map. Use this to show a city "
        "or point of interest when requested by the user."
    ),
    parameters={
        "location": ParamSpec(
            description='The city, address, or landmark to display. For example: "Paris" or "Eiffel Tower".',
        ),
    },
)

GET_DIRECTIONS = ToolDefinition(
    name="get-directions",
    description="Search for directions from an origin to a destination and display the route on the map.",
    parameters={
        "origin": ParamSpec(description="Where the route starts."),
        "destination": ParamSpec(description="Where the route ends."),
    },
)
