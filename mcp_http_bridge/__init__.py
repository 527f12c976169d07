"""HTTP gateway for a stdio MCP server."""

__version__ = "1.0.0"
