"""
Error taxonomy for the bridge.

Startup errors (SpawnError, HandshakeError) are fatal to the process.
Everything else is scoped to a single call or degrades the service.
"""

from typing import Any, Optional


class BridgeError(Exception):
    """Base class for bridge errors"""


class SpawnError(BridgeError):
    """The MCP server subprocess could not be launched"""


class HandshakeError(BridgeError):
    """Protocol negotiation with the subprocess failed"""


class TransportClosed(BridgeError):
    """The subprocess channel is gone"""

    def __init__(self, message: str = "Transport closed"):
        super().__init__(message)


class ProtocolError(BridgeError):
    """The subprocess answered a request with a JSON-RPC error"""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class UnknownToolError(BridgeError):
    """The requested tool is not offered by the subprocess"""

    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolInvocationError(BridgeError):
    """The subprocess reported a failure while running a tool"""

    def __init__(self, name: str, message: str):
        super().__init__(message)
        self.name = name
        self.message = message


class ToolCallTimeout(TimeoutError):
    """No response arrived for a request within its time bound"""

    def __init__(self, method: str, timeout: float, name: Optional[str] = None):
        target = f"tool '{name}'" if name else f"'{method}'"
        super().__init__(f"Request to {target} timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout
        self.name = name
