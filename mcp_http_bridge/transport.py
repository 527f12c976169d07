"""
Stdio transport for a single MCP server subprocess.

Messages are JSON objects framed one per line on the child's stdin and
stdout. stderr is drained and logged, never parsed.
"""

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from .config import MCPServerConfig
from .errors import SpawnError, TransportClosed

logger = logging.getLogger(__name__)
stderr_logger = logging.getLogger("mcp_http_bridge.subprocess")

# tool results can be large, the asyncio default of 64 KiB per line is not enough
STREAM_LIMIT = 16 * 1024 * 1024


class StdioTransport:
    """Owns the MCP server process and frames messages over its pipes"""

    def __init__(self, config: MCPServerConfig, stop_timeout: float = 5.0):
        self.config = config
        self.stop_timeout = stop_timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self.stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._stopped = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def closed(self) -> bool:
        return self._closed or not self.is_running

    async def start(self):
        """Start the MCP server process"""
        if self.process is not None:
            raise RuntimeError("Transport already started")

        cmd = [self.config.command, *self.config.args]
        logger.info(f"Starting MCP server: {' '.join(cmd)}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.config.env,
                cwd=self.config.cwd,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            self._closed = True
            self._stopped = True
            raise SpawnError(f"Failed to launch {self.config.command!r}: {e}") from e

        self.stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info(f"MCP server started with PID {self.process.pid}")

    async def send(self, message: Dict[str, Any]):
        """Write one framed message to the subprocess"""
        if self.closed:
            raise TransportClosed(self._closed_reason())

        data = (json.dumps(message, separators=(",", ":")) + "\n").encode()
        async with self._write_lock:
            if self.closed:
                raise TransportClosed(self._closed_reason())
            try:
                self.process.stdin.write(data)
                await self.process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                self._closed = True
                raise TransportClosed(f"Write to MCP server failed: {e}") from e

    async def receive(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield inbound messages until the subprocess closes its stdout"""
        if self.process is None:
            raise TransportClosed("Transport not started")

        stdout = self.process.stdout
        try:
            while True:
                try:
                    line = await stdout.readline()
                except (ValueError, OSError) as e:
                    logger.error(f"Error reading from MCP server: {e}")
                    break
                if not line:
                    break

                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring non-JSON output from MCP server: {line[:200]!r}")
                    continue
                if not isinstance(message, dict):
                    logger.warning(f"Ignoring non-object message from MCP server: {line[:200]!r}")
                    continue

                yield message
        finally:
            self._closed = True
            logger.debug("MCP server stdout closed")

    async def stop(self):
        """Stop the MCP server process"""
        if self._stopped:
            return
        self._stopped = True
        self._closed = True

        process = self.process
        if process is None:
            return

        if process.returncode is None:
            logger.info(f"Stopping MCP server (PID {process.pid})")
            with contextlib.suppress(OSError, RuntimeError):
                process.stdin.close()
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"MCP server did not exit within {self.stop_timeout:g}s, killing it"
                )
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        logger.info(f"MCP server exited with code {process.returncode}")

        if self.stderr_task:
            try:
                await asyncio.wait_for(self.stderr_task, timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                self.stderr_task.cancel()

    async def _drain_stderr(self):
        stream = self.process.stderr
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # overlong line, readline has already discarded it
                stderr_logger.warning("Dropped an oversized stderr line from MCP server")
                continue
            except OSError as e:
                logger.warning(f"Stopped reading MCP server stderr: {e}")
                return
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            if text:
                stderr_logger.info(self._mask(text))

    def _mask(self, text: str) -> str:
        for secret in self.config.secrets:
            if secret:
                text = text.replace(secret, "***")
        return text

    def _closed_reason(self) -> str:
        if self.process is None:
            return "Transport not started"
        if self.process.returncode is not None:
            return f"MCP server exited with code {self.process.returncode}"
        return "Transport closed"
