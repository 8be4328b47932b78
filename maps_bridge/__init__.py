"""Maps Bridge - MCP tool bridge between a Gemini chat and a map."""

__version__ = "0.1.0"
