"""
Bridge service: the single MCP client shared by every HTTP request.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from . import __version__
from .config import BridgeSettings
from .protocol import ConnectionState, ProtocolClient, ToolDescriptor
from .transport import StdioTransport

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], ProtocolClient]


class BridgeService:
    """Owns the MCP client lifecycle for the HTTP gateway"""

    def __init__(self, settings: BridgeSettings, client_factory: Optional[ClientFactory] = None):
        self.settings = settings
        self.client_factory = client_factory or self._default_client
        self.client: Optional[ProtocolClient] = None
        self.tools: List[ToolDescriptor] = []
        self.shutdown_task: Optional[asyncio.Task] = None

    def _default_client(self) -> ProtocolClient:
        transport = StdioTransport(self.settings.server_config())
        return ProtocolClient(
            transport,
            client_name="mcp-http-bridge",
            client_version=__version__,
            handshake_timeout=self.settings.handshake_timeout,
            call_timeout=self.settings.call_timeout,
        )

    @property
    def state(self) -> ConnectionState:
        if self.client is None:
            return ConnectionState.UNINITIALIZED
        return self.client.state

    async def initialize(self):
        """Connect to the MCP server; failures are fatal to startup"""
        if self.client is not None:
            raise RuntimeError("Bridge service already initialized")

        logger.info("Initializing MCP client...")
        self.client = self.client_factory()
        await self.client.connect()
        self.tools = self.client.list_capabilities()
        logger.info(f"MCP client connected, {len(self.tools)} tools available")

    def is_ready(self) -> bool:
        return self.shutdown_task is None and self.state is ConnectionState.READY

    def list_tools(self) -> List[ToolDescriptor]:
        return list(self.tools)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        if self.client is None:
            raise RuntimeError("Bridge service not initialized")
        return await self.client.invoke(name, arguments or {})

    async def reconnect(self):
        """Replace a degraded client with a freshly connected one.

        Only ever called explicitly; the bridge never reconnects on its own.
        """
        if self.shutdown_task is not None:
            raise RuntimeError("Bridge service is shutting down")

        old_client, self.client = self.client, None
        self.tools = []
        if old_client is not None:
            await old_client.close()
        await self.initialize()

    async def shutdown(self):
        """Close the MCP client; repeated or concurrent calls share one shutdown"""
        if self.shutdown_task is None:
            self.shutdown_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self.shutdown_task)

    async def _shutdown(self):
        logger.info("Shutting down gracefully...")
        if self.client is None:
            return
        try:
            await self.client.close()
        except Exception:
            logger.exception("Error closing MCP client")
        else:
            logger.info("MCP client closed")
