"""
MCP client on top of the stdio transport.

The client performs the initialize handshake, caches the tool list and
correlates JSON-RPC responses with their requests by id. Responses may
arrive in any order; a single dispatch task reads the transport and
resolves the matching pending call.
"""

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set

from .errors import (
    HandshakeError,
    ProtocolError,
    ToolCallTimeout,
    ToolInvocationError,
    TransportClosed,
    UnknownToolError,
)
from .transport import StdioTransport

logger = logging.getLogger(__name__)

LATEST_PROTOCOL_VERSION = "2025-06-18"
SUPPORTED_PROTOCOL_VERSIONS = (
    LATEST_PROTOCOL_VERSION,
    "2025-03-26",
    "2024-11-05",
    "2024-10-07",
)

METHOD_NOT_FOUND = -32601


class ConnectionState(str, Enum):
    """Lifecycle of the connection to the MCP server"""

    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass(frozen=True)
class ToolDescriptor:
    """One tool offered by the MCP server"""

    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ToolDescriptor":
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=data.get("inputSchema") or {},
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        """The tool as the MCP server described it"""
        if self.raw:
            return dict(self.raw)
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": dict(self.input_schema),
        }


@dataclass
class PendingCall:
    """A request waiting for its response"""

    id: str
    method: str
    params: Optional[Dict[str, Any]]
    future: asyncio.Future
    tool_name: Optional[str] = None

    def resolve(self, result: Any):
        if not self.future.done():
            self.future.set_result(result)

    def fail(self, error: BaseException):
        if not self.future.done():
            self.future.set_exception(error)


class ProtocolClient:
    """Request/response correlation and capability negotiation for one MCP server"""

    def __init__(
        self,
        transport: StdioTransport,
        client_name: str = "mcp-http-bridge",
        client_version: str = "1.0.0",
        handshake_timeout: float = 30.0,
        call_timeout: float = 60.0,
    ):
        self.transport = transport
        self.client_name = client_name
        self.client_version = client_version
        self.handshake_timeout = handshake_timeout
        self.call_timeout = call_timeout

        self.pending_requests: Dict[str, PendingCall] = {}
        self.reader_task: Optional[asyncio.Task] = None
        self.reply_tasks: Set[asyncio.Task] = set()
        self.protocol_version: Optional[str] = None
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}
        self._tools: Dict[str, ToolDescriptor] = {}
        self._state = ConnectionState.UNINITIALIZED

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def connect(self):
        """Start the subprocess, run the handshake and fetch the tool list"""
        if self._state is not ConnectionState.UNINITIALIZED:
            raise RuntimeError(f"Cannot connect from state {self._state.value}")
        self._state = ConnectionState.CONNECTING

        try:
            await self.transport.start()
        except BaseException:
            self._state = ConnectionState.CLOSED
            raise

        self.reader_task = asyncio.create_task(self._dispatch_loop())

        try:
            await self._handshake()
            tools = await self._fetch_tools()
            if self._state is not ConnectionState.CONNECTING:
                # channel was lost after the last reply
                raise HandshakeError("MCP server went away during the handshake")
        except BaseException:
            await self.close()
            raise

        self._tools = {tool.name: tool for tool in tools}
        self._state = ConnectionState.READY
        logger.info(
            f"Connected to MCP server {self.server_info.get('name', 'unknown')} "
            f"(protocol {self.protocol_version}, {len(self._tools)} tools)"
        )

    def list_capabilities(self) -> List[ToolDescriptor]:
        """Tools offered by the server, as fetched after the handshake"""
        return list(self._tools.values())

    async def invoke(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Call a tool and return its result payload unchanged"""
        if self._state is not ConnectionState.READY:
            raise TransportClosed(f"MCP client is not ready (state: {self._state.value})")
        if name not in self._tools:
            raise UnknownToolError(name)

        try:
            return await self._request(
                "tools/call",
                {"name": name, "arguments": arguments or {}},
                timeout=self.call_timeout if timeout is None else timeout,
                tool_name=name,
            )
        except ProtocolError as e:
            raise ToolInvocationError(name, e.message) from e

    async def close(self):
        """Fail everything still pending and stop the subprocess"""
        if self._state is ConnectionState.CLOSED:
            return
        self._state = ConnectionState.CLOSED

        self._fail_pending("MCP client closed")
        await self.transport.stop()

        if self.reader_task and not self.reader_task.done():
            self.reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.reader_task

        for task in list(self.reply_tasks):
            task.cancel()

    async def _handshake(self):
        params = {
            "protocolVersion": LATEST_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": self.client_name, "version": self.client_version},
        }
        try:
            result = await self._request("initialize", params, timeout=self.handshake_timeout)
        except ToolCallTimeout as e:
            raise HandshakeError(
                f"MCP server did not answer initialize within {self.handshake_timeout:g}s"
            ) from e
        except ProtocolError as e:
            raise HandshakeError(f"MCP server rejected initialize: {e.message}") from e
        except TransportClosed as e:
            raise HandshakeError(f"MCP server closed during handshake: {e}") from e

        if not isinstance(result, dict):
            raise HandshakeError(f"Malformed initialize result: {result!r}")

        version = result.get("protocolVersion")
        if version not in SUPPORTED_PROTOCOL_VERSIONS:
            raise HandshakeError(f"Unsupported protocol version from MCP server: {version!r}")

        self.protocol_version = version
        self.server_info = result.get("serverInfo") or {}
        self.server_capabilities = result.get("capabilities") or {}

        try:
            await self._notify("notifications/initialized")
        except TransportClosed as e:
            raise HandshakeError(f"MCP server closed during handshake: {e}") from e

    async def _fetch_tools(self) -> List[ToolDescriptor]:
        tools: List[ToolDescriptor] = []
        seen_cursors = set()
        cursor = None
        while True:
            params = {"cursor": cursor} if cursor else None
            try:
                result = await self._request("tools/list", params, timeout=self.handshake_timeout)
            except ToolCallTimeout as e:
                raise HandshakeError(
                    f"MCP server did not list its tools within {self.handshake_timeout:g}s"
                ) from e
            except ProtocolError as e:
                raise HandshakeError(f"MCP server failed to list tools: {e.message}") from e
            except TransportClosed as e:
                raise HandshakeError(f"MCP server closed while listing tools: {e}") from e

            if not isinstance(result, dict):
                raise HandshakeError(f"Malformed tools/list result: {result!r}")

            for item in result.get("tools") or []:
                try:
                    tools.append(ToolDescriptor.from_dict(item))
                except (KeyError, TypeError, AttributeError):
                    logger.warning(f"Skipping malformed tool descriptor: {item!r}")

            cursor = result.get("nextCursor")
            if not cursor:
                return tools
            if cursor in seen_cursors:
                raise HandshakeError(f"MCP server repeated tools/list cursor {cursor!r}")
            seen_cursors.add(cursor)

    async def _request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: float,
        tool_name: Optional[str] = None,
    ) -> Any:
        """Send a request and wait for the response with the same id"""
        if self._state is ConnectionState.CLOSED:
            raise TransportClosed("MCP client closed")

        request_id = str(uuid.uuid4())
        call = PendingCall(
            id=request_id,
            method=method,
            params=params,
            future=asyncio.get_running_loop().create_future(),
            tool_name=tool_name,
        )
        request = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            request["params"] = params

        self.pending_requests[request_id] = call
        try:
            try:
                await self.transport.send(request)
            except TransportClosed as e:
                call.fail(e)
            else:
                done, _ = await asyncio.wait((call.future,), timeout=timeout)
                if not done:
                    logger.warning(f"Request {request_id} ({method}) timed out after {timeout:g}s")
                    call.fail(ToolCallTimeout(method, timeout, tool_name))
            return call.future.result()
        finally:
            self.pending_requests.pop(request_id, None)
            if not call.future.done():
                call.future.cancel()

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None):
        message = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self.transport.send(message)

    async def _dispatch_loop(self):
        """Route every inbound message until the transport ends"""
        try:
            async for message in self.transport.receive():
                try:
                    self._dispatch(message)
                except Exception:
                    logger.exception(f"Error dispatching message from MCP server: {message!r}")
        finally:
            self._on_transport_lost()

    def _dispatch(self, message: Dict[str, Any]):
        if "method" in message:
            if "id" in message:
                # replies are written off the read loop
                task = asyncio.create_task(self._answer_server_request(message))
                self.reply_tasks.add(task)
                task.add_done_callback(self.reply_tasks.discard)
            else:
                logger.debug(f"Notification from MCP server: {message['method']}")
            return

        request_id = message.get("id")
        if request_id is None:
            logger.warning(f"Dropping malformed message from MCP server: {message!r}")
            return

        call = self.pending_requests.get(request_id)
        if call is None:
            logger.warning(f"Dropping response with unknown id {request_id!r}")
            return

        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                message_text = str(error.get("message", "Unknown error"))
                call.fail(ProtocolError(error.get("code"), message_text, error.get("data")))
            else:
                call.fail(ProtocolError(None, str(error)))
        else:
            call.resolve(message.get("result"))

    async def _answer_server_request(self, message: Dict[str, Any]):
        method = message["method"]
        response: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"]}
        if method == "ping":
            response["result"] = {}
        else:
            logger.debug(f"Rejecting unsupported request from MCP server: {method}")
            response["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}
        try:
            await self.transport.send(response)
        except TransportClosed:
            logger.warning(f"Could not answer MCP server request {method}, transport closed")

    def _on_transport_lost(self):
        if self._state is ConnectionState.CLOSED:
            return
        returncode = self.transport.returncode
        reason = "MCP server closed its output"
        if returncode is not None:
            reason = f"MCP server exited with code {returncode}"
        if self._state in (ConnectionState.READY, ConnectionState.CONNECTING):
            self._state = ConnectionState.DEGRADED
            logger.error(f"{reason}; bridge is degraded until restarted")
        self._fail_pending(reason)

    def _fail_pending(self, reason: str):
        pending = list(self.pending_requests.values())
        self.pending_requests.clear()
        for call in pending:
            call.fail(TransportClosed(reason))
        if pending:
            logger.warning(f"Failed {len(pending)} pending request(s): {reason}")
