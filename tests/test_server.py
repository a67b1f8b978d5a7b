import json

import pytest

from ssh_mcp.server import TOOL_HANDLERS, handle_request
from ssh_mcp.tunnels import TunnelManager


@pytest.fixture
def tunnels(registry):
    manager = TunnelManager(registry)
    yield manager
    manager.close_all()


def _call(registry, tunnels, name, arguments=None, req_id=7):
    response = handle_request(
        {"jsonrpc": "2.0", "id": req_id, "method": "tools/call",
         "params": {"name": name, "arguments": arguments or {}}},
        registry, tunnels,
    )
    payload = json.loads(response["result"]["content"][0]["text"])
    return response, payload


def test_initialize(registry, tunnels):
    response = handle_request({"jsonrpc": "2.0", "id": 1, "method": "initialize"}, registry, tunnels)
    result = response["result"]
    assert result["protocolVersion"] == "2024-11-05"
    assert result["serverInfo"]["name"] == "ssh-session-mcp"
    assert "open_session" in result["instructions"]


def test_initialized_notification_has_no_response(registry, tunnels):
    assert handle_request({"jsonrpc": "2.0", "method": "notifications/initialized"}, registry, tunnels) is None


def test_tools_list_matches_handlers(registry, tunnels):
    response = handle_request({"jsonrpc": "2.0", "id": 3, "method": "tools/list"}, registry, tunnels)
    names = [tool["name"] for tool in response["result"]["tools"]]

    assert response["id"] == 3
    assert sorted(names) == sorted(TOOL_HANDLERS)
    assert len(names) == 16


def test_unknown_method_and_tool(registry, tunnels):
    response = handle_request({"jsonrpc": "2.0", "id": 4, "method": "resources/list"}, registry, tunnels)
    assert response["error"]["code"] == -32601

    response = handle_request(
        {"jsonrpc": "2.0", "id": 5, "method": "tools/call", "params": {"name": "telnet"}},
        registry, tunnels,
    )
    assert response["error"]["code"] == -32601


def test_open_execute_close_flow(registry, tunnels, connector):
    response, payload = _call(registry, tunnels, "open_session", {"host": "host1", "password": "pw", "port": "2222"})
    assert "isError" not in response["result"]
    assert payload["success"] is True
    assert payload["session_id"] == "host1:2222"

    connector.clients[0].transport.runner = lambda command: (b"ok\n", b"", 0)
    _, payload = _call(registry, tunnels, "execute", {"session_id": "host1:2222", "command": "echo ok"})
    assert payload == {"success": True, "stdout": "ok", "stderr": "", "exit_code": 0}

    _, payload = _call(registry, tunnels, "list_sessions")
    assert [s["id"] for s in payload["sessions"]] == ["host1:2222"]

    _, payload = _call(registry, tunnels, "close_session", {"session_id": "host1:2222"})
    assert payload["closed"] == ["host1:2222"]


def test_session_errors_become_tool_errors(registry, tunnels):
    response, payload = _call(registry, tunnels, "execute", {"session_id": "ghost", "command": "ls"})

    assert response["result"]["isError"] is True
    assert payload["success"] is False
    assert payload["error_type"] == "session_not_found"
    assert "ghost" in payload["error"]


def test_missing_argument(registry, tunnels):
    _, payload = _call(registry, tunnels, "execute", {"session_id": "host1:22"})
    assert payload["error_type"] == "invalid_argument"


def test_non_numeric_argument(registry, tunnels):
    _, payload = _call(registry, tunnels, "open_session", {"host": "h", "port": "ssh"})
    assert payload["error_type"] == "invalid_argument"


def test_unexpected_errors_are_internal(registry, tunnels, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setitem(TOOL_HANDLERS, "list_sessions", explode)
    response, payload = _call(registry, tunnels, "list_sessions")
    assert response["result"]["isError"] is True
    assert payload == {"success": False, "error": "kaboom", "error_type": "internal"}


def test_file_mode_accepts_octal_string(registry, tunnels, connector):
    _call(registry, tunnels, "open_session", {"host": "host1", "password": "pw"})
    _, payload = _call(registry, tunnels, "write_file", {
        "session_id": "host1:22", "path": "/run.sh", "content": "echo hi", "mode": "0755",
    })
    assert payload["success"] is True
    sftp = connector.clients[0].sftp
    assert sftp.nodes["/run.sh"]["mode"] & 0o777 == 0o755


def test_generate_keypair_tool(registry, tunnels):
    _, payload = _call(registry, tunnels, "generate_keypair", {"type": "ecdsa", "bits": 521})
    assert payload["success"] is True
    assert payload["public_key"].startswith("ecdsa-sha2-nistp521 ")

    _, payload = _call(registry, tunnels, "generate_keypair", {"type": "dsa"})
    assert payload["error_type"] == "unsupported_key_type"


def test_tunnel_tools(registry, tunnels):
    _call(registry, tunnels, "open_session", {"host": "host1", "password": "pw"})
    _, payload = _call(registry, tunnels, "create_tunnel", {
        "session_id": "host1:22", "direction": "remote", "bind_port": 9000,
        "dest_addr": "127.0.0.1", "dest_port": 8080,
    })
    tunnel_id = payload["tunnel_id"]
    assert tunnel_id == "remote:127.0.0.1:9000->127.0.0.1:8080"

    _, payload = _call(registry, tunnels, "list_tunnels")
    assert [t["tunnel_id"] for t in payload["tunnels"]] == [tunnel_id]

    _, payload = _call(registry, tunnels, "close_tunnel", {"tunnel_id": tunnel_id})
    assert payload["closed"] is True


def test_close_all_sessions(registry, tunnels):
    _call(registry, tunnels, "open_session", {"host": "host1", "password": "pw"})
    _call(registry, tunnels, "open_session", {"host": "host2", "password": "pw"})
    _, payload = _call(registry, tunnels, "close_session")
    assert sorted(payload["closed"]) == ["host1:22", "host2:22"]

    _, payload = _call(registry, tunnels, "close_session")
    assert payload["closed"] == []
