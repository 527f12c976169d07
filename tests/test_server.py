import signal

import pytest
from fastapi.testclient import TestClient

from mcp_http_bridge import server
from mcp_http_bridge.errors import (
    HandshakeError,
    ToolCallTimeout,
    ToolInvocationError,
    TransportClosed,
    UnknownToolError,
)
from mcp_http_bridge.protocol import ConnectionState, ToolDescriptor
from mcp_http_bridge.server import create_app, error_detail
from mcp_http_bridge.service import BridgeService

TOOLS = [
    {"name": "foo", "description": "Foo", "inputSchema": {"type": "object"}},
    {"name": "broken", "description": "Fails", "inputSchema": {"type": "object"}},
    {"name": "gone", "description": "Loses the transport", "inputSchema": {"type": "object"}},
    {"name": "late", "description": "Times out", "inputSchema": {"type": "object"}},
]


class _Client:
    def __init__(self, fail_connect=False):
        self.fail_connect = fail_connect
        self.state = ConnectionState.UNINITIALIZED
        self.invocations = []
        self.closed = 0

    async def connect(self):
        if self.fail_connect:
            raise HandshakeError("MCP server did not answer initialize")
        self.state = ConnectionState.READY

    def list_capabilities(self):
        return [ToolDescriptor.from_dict(tool) for tool in TOOLS]

    async def invoke(self, name, arguments=None):
        self.invocations.append((name, arguments))
        if name == "broken":
            raise ToolInvocationError(name, "project 42 not found")
        if name == "gone":
            self.state = ConnectionState.DEGRADED
            raise TransportClosed("MCP server exited with code 1")
        if name == "late":
            raise ToolCallTimeout("tools/call", 60.0, name)
        if name not in {tool["name"] for tool in TOOLS}:
            raise UnknownToolError(name)
        return {"y": arguments.get("x", 0) + 1}

    async def close(self):
        self.closed += 1
        self.state = ConnectionState.CLOSED


@pytest.fixture
def fake_client():
    return _Client()


@pytest.fixture
def bridge(make_settings, fake_client):
    return BridgeService(make_settings(), client_factory=lambda: fake_client)


@pytest.fixture
def client(bridge):
    with TestClient(create_app(bridge)) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["timestamp"].endswith("Z")
    assert body["connection"] == "ready"


def test_root_lists_endpoints(client):
    body = client.get("/").json()
    assert body["name"] == "mcp-http-bridge"
    assert body["endpoints"]["toolCall"] == "/tools/{toolName}/call"


def test_list_tools(client):
    response = client.get("/tools")
    assert response.status_code == 200
    assert response.json() == TOOLS


def test_call_tool(client, fake_client):
    response = client.post("/tools/foo/call", json={"x": 1})
    assert response.status_code == 200
    assert response.json() == {"toolName": "foo", "result": {"y": 2}}
    assert fake_client.invocations == [("foo", {"x": 1})]


def test_call_tool_without_body_uses_empty_arguments(client, fake_client):
    response = client.post("/tools/foo/call")
    assert response.status_code == 200
    assert fake_client.invocations == [("foo", {})]


def test_call_tool_rejects_non_object_body(client, fake_client):
    response = client.post("/tools/foo/call", json=[1, 2])
    assert response.status_code == 422
    assert fake_client.invocations == []


def test_unknown_tool_is_404(client):
    response = client.post("/tools/nonexistent-tool/call", json={})
    assert response.status_code == 404
    assert response.json() == {"error": "Unknown tool: nonexistent-tool"}


def test_tool_error_is_500_with_message(client):
    response = client.post("/tools/broken/call", json={})
    assert response.status_code == 500
    assert response.json() == {"error": "project 42 not found"}


def test_timeout_is_500(client):
    response = client.post("/tools/late/call", json={})
    assert response.status_code == 500
    assert "timed out" in response.json()["error"]


def test_transport_loss_is_500_then_503(client):
    response = client.post("/tools/gone/call", json={})
    assert response.status_code == 500
    assert response.json() == {"error": "MCP server exited with code 1"}

    assert client.get("/tools").status_code == 503
    assert client.post("/tools/foo/call", json={}).status_code == 503
    assert client.get("/health").json()["connection"] == "degraded"


def test_tools_unavailable_before_initialize(bridge):
    # no lifespan: the bridge never connected
    test_client = TestClient(create_app(bridge))
    response = test_client.get("/tools")
    assert response.status_code == 503
    assert response.json() == {"error": "MCP client not initialized"}
    assert test_client.post("/tools/foo/call", json={}).status_code == 503
    assert test_client.get("/health").status_code == 200


def test_shutdown_closes_client(bridge, fake_client):
    with TestClient(create_app(bridge)):
        pass
    assert fake_client.closed == 1


def test_startup_failure_aborts(make_settings):
    bridge = BridgeService(make_settings(), client_factory=lambda: _Client(fail_connect=True))
    with pytest.raises(HandshakeError):
        with TestClient(create_app(bridge)):
            pass


def test_openapi_and_docs(client):
    document = client.get("/openapi.json").json()
    assert "/tools/{toolName}/call" in document["paths"]
    assert "/health" in document["paths"]

    docs = client.get("/api-docs")
    assert docs.status_code == 200
    assert "swagger" in docs.text.lower()


def test_error_detail():
    assert error_detail(ValueError("x")) == "x"
    assert error_detail(ValueError()) == "Unknown error"
    assert error_detail(None) == "Unknown error"


def test_main_exits_when_required_variables_missing(monkeypatch, capsys):
    for name in ("BASE_URL", "API_KEY", "LOG_LEVEL", "PORT", "MCP_PORT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("API_KEY", "secret")
    monkeypatch.setattr(server, "load_dotenv", lambda *args, **kwargs: None)

    def fail_run(self, *args, **kwargs):
        raise AssertionError("uvicorn must not start")

    monkeypatch.setattr(server.BridgeServer, "run", fail_run)

    assert server.main([]) == 1
    assert "BASE_URL" in capsys.readouterr().err


def test_main_check_config_masks_secret(monkeypatch, capsys):
    monkeypatch.setenv("BASE_URL", "https://projects.example.test")
    monkeypatch.setenv("API_KEY", "very-secret-key")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setattr(server, "load_dotenv", lambda *args, **kwargs: None)
    monkeypatch.setattr(server, "configure_logging", lambda level: None)

    assert server.main(["--check-config"]) == 0
    err = capsys.readouterr().err
    assert "projects.example.test" in err
    assert "very-secret-key" not in err


@pytest.fixture
def main_env(monkeypatch):
    monkeypatch.setenv("BASE_URL", "https://projects.example.test")
    monkeypatch.setenv("API_KEY", "very-secret-key")
    monkeypatch.setenv("PORT", "9123")
    monkeypatch.setenv("LOG_LEVEL", "silent")
    monkeypatch.setattr(server, "load_dotenv", lambda *args, **kwargs: None)
    monkeypatch.setattr(server, "configure_logging", lambda level: None)


def test_main_runs_uvicorn(monkeypatch, main_env):
    seen = {}

    def fake_run(self, *args, **kwargs):
        seen["server"] = self
        self.started = True

    monkeypatch.setattr(server.BridgeServer, "run", fake_run)

    assert server.main([]) == 0
    config = seen["server"].config
    assert config.port == 9123
    assert config.log_level == "critical"
    assert isinstance(config.app.state.bridge, BridgeService)
    assert seen["server"].bridge is config.app.state.bridge


def test_main_reports_startup_failure(monkeypatch, main_env):
    def fake_run(self, *args, **kwargs):
        self.started = False

    monkeypatch.setattr(server.BridgeServer, "run", fake_run)

    assert server.main([]) == server.STARTUP_FAILURE


def test_server_keeps_signals_captured_until_shutdown_ends(bridge):
    bridge_server = server.BridgeServer(server.uvicorn.Config(create_app(bridge)), bridge)
    before = signal.getsignal(signal.SIGTERM)

    with bridge_server.capture_signals():
        assert signal.getsignal(signal.SIGTERM) == bridge_server.handle_exit
        bridge_server.handle_exit(signal.SIGTERM, None)
        bridge_server.handle_exit(signal.SIGINT, None)

    # no re-raise of the captured signals on exit
    assert signal.getsignal(signal.SIGTERM) == before
    assert bridge_server.should_exit
    assert bridge_server.force_exit


@pytest.mark.asyncio
async def test_forced_server_shutdown_still_closes_bridge(bridge, fake_client):
    await bridge.initialize()
    bridge_server = server.BridgeServer(server.uvicorn.Config(create_app(bridge)), bridge)
    bridge_server.servers = []
    bridge_server.force_exit = True

    await bridge_server.shutdown(sockets=None)

    assert fake_client.closed == 1
