"""Error taxonomy shared by the bridge, the transport and the stream reducer.

Errors cross the MCP boundary as the text of an error result. ``encode_error``
turns a bridge error into a small JSON envelope and ``decode_error`` restores
the typed exception on the client side.
"""

import json
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class BridgeError(Exception):
    """Base class for every error raised by maps_bridge."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def details(self) -> dict:
        return {}


class ConfigurationError(BridgeError):
    pass


class DuplicateToolError(ConfigurationError):
    def __init__(self, name: str):
        super().__init__(f"Tool already registered: {name}")
        self.name = name

    def details(self) -> dict:
        return {"name": self.name}


class ValidationError(BridgeError):
    """An invocation did not match any registered tool schema."""


class UnknownToolError(ValidationError):
    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name

    def details(self) -> dict:
        return {"name": self.name}


class SchemaViolationError(ValidationError):
    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"Invalid or missing argument: {field}")
        self.field = field

    def details(self) -> dict:
        return {"field": self.field}


class TransportClosedError(BridgeError):
    def __init__(self, message: str = "Transport is closed"):
        super().__init__(message)


class ToolExecutionError(BridgeError):
    pass


class StreamSourceError(BridgeError):
    pass


class UpstreamServiceError(BridgeError):
    pass


class TurnInProgressError(BridgeError):
    def __init__(self, message: str = "A turn is already in progress"):
        super().__init__(message)


_WIRE_TYPES: dict[str, type[BridgeError]] = {
    cls.__name__: cls
    for cls in (
        UnknownToolError,
        SchemaViolationError,
        DuplicateToolError,
        TransportClosedError,
        ToolExecutionError,
        StreamSourceError,
        UpstreamServiceError,
    )
}


def encode_error(exc: BridgeError) -> str:
    """Serialize a bridge error into the JSON text of an MCP error result."""
    payload = {"type": type(exc).__name__, "message": exc.message, **exc.details()}
    return json.dumps({"error": payload})


def _embedded_json(text: str) -> Optional[Any]:
    """Parse the JSON object between the first '{' and the last '}' of text."""
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        return json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        logger.debug("Could not parse embedded JSON from error text: %s", e)
        return None


def decode_error(text: str) -> BridgeError:
    """Rebuild a typed error from the text of an MCP error result.

    Text that does not carry an envelope becomes a ToolExecutionError.
    """
    data = _embedded_json(text)
    error = data.get("error") if isinstance(data, dict) else None
    if not isinstance(error, dict):
        return ToolExecutionError(text)

    kind = error.get("type")
    message = error.get("message") or text
    if kind == "UnknownToolError":
        exc: BridgeError = UnknownToolError(error.get("name", ""))
    elif kind == "SchemaViolationError":
        exc = SchemaViolationError(error.get("field", ""), message)
    elif kind == "DuplicateToolError":
        exc = DuplicateToolError(error.get("name", ""))
    elif kind in _WIRE_TYPES:
        exc = _WIRE_TYPES[kind](message)
    else:
        exc = ToolExecutionError(message)
    exc.message = message
    return exc


def _raw_error_text(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    if isinstance(error, str):
        return error
    message = error.get("message") if isinstance(error, dict) else getattr(error, "message", None)
    if isinstance(message, str):
        return message
    try:
        return f"Unexpected error: {json.dumps(error)}"
    except (TypeError, ValueError):
        return f"Unexpected error: {error}"


def extract_error_message(error: Any) -> str:
    """Return the most specific human-readable message for an error.

    SDK errors often embed a JSON body in their text, e.g.
    ``Error calling tool: {"error": {"message": "quota exceeded"}}``. When such
    an object is present, ``error.message`` wins over a top-level ``message``;
    otherwise the raw text is returned unchanged.
    """
    text = _raw_error_text(error)
    data = _embedded_json(text)
    if isinstance(data, dict):
        nested = data.get("error")
        if isinstance(nested, dict) and isinstance(nested.get("message"), str):
            return nested["message"]
        if isinstance(data.get("message"), str):
            return data["message"]
    return text
