#!/usr/bin/env python3
"""
MCP HTTP Bridge Client

Small aiohttp client for the bridge's REST interface, usable as a library
or from the command line:

    python -m mcp_http_bridge.client tools
    python -m mcp_http_bridge.client call get_project '{"id": 1}'
"""

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional

import aiohttp

DEFAULT_BRIDGE_URL = "http://localhost:8000"


class GatewayError(Exception):
    """The bridge answered with a non-success status"""

    def __init__(self, status: int, message: str):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message


class BridgeHTTPClient:
    """Client for the MCP HTTP bridge"""

    def __init__(self, base_url: str = DEFAULT_BRIDGE_URL, timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        """Start the client session"""
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

    async def stop(self):
        """Stop the client session"""
        if self.session:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> "BridgeHTTPClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()

    async def health(self) -> Dict[str, Any]:
        return await self._request("GET", "/health")

    async def list_tools(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/tools")

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Call a tool and return its result payload"""
        body = await self._request("POST", f"/tools/{name}/call", json=arguments or {})
        return body.get("result")

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        await self.start()
        url = f"{self.base_url}{path}"
        async with self.session.request(method, url, **kwargs) as response:
            try:
                body = await response.json(content_type=None)
            except (json.JSONDecodeError, aiohttp.ContentTypeError):
                body = None
            if response.status >= 400:
                message = body.get("error") if isinstance(body, dict) else None
                raise GatewayError(response.status, message or response.reason or "Request failed")
            return body


async def run(args: argparse.Namespace) -> int:
    async with BridgeHTTPClient(args.url) as client:
        try:
            if args.command == "tools":
                output = await client.list_tools()
            elif args.command == "health":
                output = await client.health()
            else:
                output = await client.call_tool(args.name, json.loads(args.arguments))
        except GatewayError as e:
            print(e, file=sys.stderr)
            return 1
        except aiohttp.ClientError as e:
            print(f"Could not reach bridge at {args.url}: {e}", file=sys.stderr)
            return 1

    print(json.dumps(output, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(prog="mcp-http-bridge-client")
    parser.add_argument(
        "--url",
        default=os.getenv("MCP_BRIDGE_URL", DEFAULT_BRIDGE_URL),
        help="bridge base URL (default: $MCP_BRIDGE_URL or %(default)s)",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("health", help="show bridge health")
    commands.add_parser("tools", help="list available tools")
    call = commands.add_parser("call", help="call a tool")
    call.add_argument("name")
    call.add_argument("arguments", nargs="?", default="{}", help="JSON object of tool arguments")
    args = parser.parse_args(argv)

    if args.command == "call":
        try:
            arguments = json.loads(args.arguments)
        except json.JSONDecodeError as e:
            parser.error(f"arguments must be JSON: {e}")
        if not isinstance(arguments, dict):
            parser.error("arguments must be a JSON object")

    return asyncio.run(run(args))


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        pass
