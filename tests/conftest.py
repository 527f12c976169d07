"""Pytest hooks and fixtures."""

import os
import sys
from pathlib import Path

import pytest

from mcp_http_bridge.config import BridgeSettings, MCPServerConfig

FAKE_SERVER = str(Path(__file__).with_name("fake_mcp_server.py"))

TEST_BASE_URL = "https://projects.example.test"
TEST_API_KEY = "sk-test-0123456789"


@pytest.fixture
def make_server_config():
    """Build the subprocess config for the fake MCP server in a given mode."""

    def _make(mode: str = "") -> MCPServerConfig:
        env = dict(os.environ)
        env.update({"BASE_URL": TEST_BASE_URL, "API_KEY": TEST_API_KEY, "FAKE_MCP_MODE": mode})
        return MCPServerConfig(
            command=sys.executable,
            args=["-u", FAKE_SERVER],
            env=env,
            secrets=(TEST_API_KEY,),
        )

    return _make


@pytest.fixture
def make_settings():
    """Bridge settings that launch the fake MCP server."""

    def _make(**overrides) -> BridgeSettings:
        values = {
            "base_url": TEST_BASE_URL,
            "api_key": TEST_API_KEY,
            "command": sys.executable,
            "args": ("-u", FAKE_SERVER),
            "handshake_timeout": 10.0,
            "call_timeout": 10.0,
        }
        values.update(overrides)
        return BridgeSettings(**values)

    return _make
