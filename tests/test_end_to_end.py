"""Gateway, service and a real MCP server subprocess wired together."""

import os
import subprocess
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from mcp_http_bridge.server import create_app
from mcp_http_bridge.service import BridgeService

PROJECT_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture
def client(make_settings):
    bridge = BridgeService(make_settings())
    with TestClient(create_app(bridge)) as test_client:
        yield test_client


def test_lists_three_tools(client):
    response = client.get("/tools")
    assert response.status_code == 200
    tools = response.json()
    assert len(tools) == 3
    assert {tool["name"] for tool in tools} == {"foo", "slow", "crash"}
    assert all("inputSchema" in tool for tool in tools)


def test_call_tool(client):
    response = client.post("/tools/foo/call", json={"x": 1})
    assert response.status_code == 200
    assert response.json() == {"toolName": "foo", "result": {"y": 2}}


def test_tool_error_is_passed_through(client):
    response = client.post("/tools/foo/call", json={"fail": True})
    assert response.status_code == 500
    assert response.json() == {"error": "foo failed"}
    assert client.get("/tools").status_code == 200


def test_unknown_tool(client):
    response = client.post("/tools/nonexistent-tool/call", json={})
    assert response.status_code == 404


def test_subprocess_exit_mid_call_degrades_bridge(client):
    response = client.post("/tools/crash/call", json={})
    assert response.status_code == 500
    assert response.json()["error"]

    assert client.get("/tools").status_code == 503
    assert client.get("/health").status_code == 200


def test_missing_base_url_exits_before_serving(tmp_path):
    env = {key: value for key, value in os.environ.items() if key not in ("BASE_URL", "PORT")}
    env["API_KEY"] = "secret"
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(PROJECT_ROOT), env.get("PYTHONPATH")]))

    result = subprocess.run(
        [sys.executable, "-m", "mcp_http_bridge"],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        timeout=30,
    )

    assert result.returncode != 0
    assert "BASE_URL" in result.stderr
    assert "Uvicorn running" not in result.stderr
