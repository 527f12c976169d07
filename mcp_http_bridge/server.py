#!/usr/bin/env python3
"""
MCP-over-HTTP Bridge Server

This server provides REST endpoints that bridge to a single stdio-based MCP
server. The MCP client is connected before the listener accepts traffic and
the subprocess is stopped when the server shuts down.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from dotenv import find_dotenv, load_dotenv
from fastapi import Body, Depends, FastAPI, Path, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import UVICORN_LOG_LEVELS, BridgeSettings, configure_logging, validate_environment
from .errors import ToolCallTimeout, ToolInvocationError, TransportClosed, UnknownToolError
from .models import ErrorResponse, HealthResponse, ServiceDescriptor, ToolCallResponse
from .service import BridgeService

logger = logging.getLogger(__name__)

SERVICE_NAME = "mcp-http-bridge"
NOT_READY = "MCP client not initialized"

# exit status when application startup fails, as uvicorn.run uses
STARTUP_FAILURE = 3

ENDPOINTS = {
    "health": "/health",
    "tools": "/tools",
    "toolCall": "/tools/{toolName}/call",
    "docs": "/api-docs",
    "openapi": "/openapi.json",
}


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def error_detail(error: Optional[BaseException]) -> str:
    message = str(error) if error is not None else ""
    return message or "Unknown error"


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def get_bridge(request: Request) -> BridgeService:
    return request.app.state.bridge


def create_app(bridge: BridgeService) -> FastAPI:
    """Build the gateway around an already constructed bridge service"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # runs before uvicorn binds the port; a failure aborts startup
        await bridge.initialize()
        try:
            yield
        finally:
            await bridge.shutdown()

    app = FastAPI(
        title="MCP-over-HTTP Bridge",
        description="REST interface to a Model Context Protocol server running over stdio",
        version=__version__,
        docs_url="/api-docs",
        openapi_url="/openapi.json",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.bridge = bridge

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(f"{request.method} {request.url.path}")
        return await call_next(request)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, error: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=error)
        return error_response(500, "Internal server error")

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health(service: BridgeService = Depends(get_bridge)):
        """Health check endpoint"""
        return {
            "status": "ok",
            "timestamp": utc_timestamp(),
            "connection": service.state.value,
        }

    @app.get(
        "/tools",
        response_model=List[Dict[str, Any]],
        responses={503: {"model": ErrorResponse}},
        tags=["Tools"],
    )
    async def list_tools(service: BridgeService = Depends(get_bridge)):
        """List tools available on the MCP server"""
        if not service.is_ready():
            return error_response(503, NOT_READY)
        return [tool.to_dict() for tool in service.list_tools()]

    @app.post(
        "/tools/{toolName}/call",
        response_model=ToolCallResponse,
        responses={
            404: {"model": ErrorResponse},
            500: {"model": ErrorResponse},
            503: {"model": ErrorResponse},
        },
        tags=["Tools"],
    )
    async def call_tool(
        tool_name: str = Path(..., alias="toolName"),
        arguments: Optional[Dict[str, Any]] = Body(default=None),
        service: BridgeService = Depends(get_bridge),
    ):
        """Call a tool on the MCP server with the request body as its arguments"""
        if not service.is_ready():
            return error_response(503, NOT_READY)

        try:
            result = await service.call_tool(tool_name, arguments or {})
        except UnknownToolError as e:
            return error_response(404, error_detail(e))
        except ToolInvocationError as e:
            logger.warning(f"Tool {tool_name} failed: {e}")
            return error_response(500, error_detail(e))
        except (TransportClosed, ToolCallTimeout) as e:
            logger.error(f"Error calling tool {tool_name}: {e}")
            return error_response(500, error_detail(e))

        return {"toolName": tool_name, "result": result}

    @app.get("/", response_model=ServiceDescriptor)
    async def root():
        """Service descriptor with the endpoint map"""
        return {"name": SERVICE_NAME, "version": __version__, "endpoints": ENDPOINTS}

    return app


class BridgeServer(uvicorn.Server):
    """uvicorn server that returns after a signal-triggered shutdown.

    Captured SIGINT/SIGTERM are not re-raised once shutdown completes.
    A second signal forces uvicorn past the lifespan shutdown, so the
    bridge is shut down here as well; that call is shared and idempotent.
    """

    def __init__(self, config: uvicorn.Config, bridge: BridgeService):
        super().__init__(config)
        self.bridge = bridge

    @contextmanager
    def capture_signals(self):
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        original_handlers = {
            sig: signal.signal(sig, self.handle_exit)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            yield
        finally:
            for sig, handler in original_handlers.items():
                signal.signal(sig, handler)

    async def shutdown(self, sockets=None):
        await super().shutdown(sockets=sockets)
        await self.bridge.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog=SERVICE_NAME,
        description="Serve a stdio MCP server over HTTP",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="validate the environment, print the resolved settings and exit",
    )
    args = parser.parse_args(argv)

    load_dotenv(find_dotenv(usecwd=True))

    problems = validate_environment()
    if problems:
        for problem in problems:
            print(problem, file=sys.stderr)
        return 1

    settings = BridgeSettings.from_env()
    configure_logging(settings.log_level)

    if args.check_config:
        print(json.dumps(settings.describe(), indent=2), file=sys.stderr)
        return 0

    bridge = BridgeService(settings)
    app = create_app(bridge)

    logger.info(f"Starting MCP-over-HTTP Bridge on {settings.host}:{settings.port}")
    logger.info(f"API documentation at http://localhost:{settings.port}/api-docs")
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level=UVICORN_LOG_LEVELS[settings.log_level],
        access_log=False,
    )
    server = BridgeServer(config, bridge)
    server.run()
    if not server.started:
        return STARTUP_FAILURE
    return 0


if __name__ == "__main__":
    sys.exit(main())
