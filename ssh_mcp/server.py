import json
from typing import Any, Callable, Dict, Optional

from ssh_mcp import exec as remote_exec
from ssh_mcp import fs
from ssh_mcp.errors import InvalidArgument, SSHMCPError
from ssh_mcp.keygen import generate_keypair
from ssh_mcp.utils import log_error, to_bool, to_optional_int

SERVER_NAME = "ssh-session-mcp"
SERVER_VERSION = "1.0.0"
PROTOCOL_VERSION = "2024-11-05"

INSTRUCTIONS = "\n".join([
    "This server provides SSH remote access: run commands, transfer files via SFTP, open TCP tunnels and generate SSH key pairs.",
    "",
    "## Connection workflow",
    "1. Call open_session with host, username and credentials. You get back a session_id.",
    "2. Pass session_id to every other tool. Calling open_session again for the same host/name reuses a live session.",
    "3. Sessions stay open until close_session, or until they sit idle past the idle timeout (30 min by default).",
    "",
    "## Authentication (in order of preference)",
    "1. private_key: inline private key text.",
    "2. private_key_path: path to a private key file on this machine.",
    "3. Auto-detect: with neither key nor password, ~/.ssh/id_ed25519, ~/.ssh/id_rsa and ~/.ssh/id_ecdsa are tried.",
    "4. password.",
    "",
    "## Tips",
    "- execute timeouts are in milliseconds (default 30000). Raise them for package installs and builds.",
    "- read_file defaults to utf8; use encoding='base64' for binary files. Files above max_size are refused.",
    "- make_dir and remove accept recursive=true (mkdir -p / rm -r).",
    "- generate_keypair returns keys as strings and never writes them to disk.",
    "- create_tunnel direction='local' listens here and forwards through SSH; 'remote' listens on the server and forwards back here.",
])


def format_tool_result(result: Any, is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}

def make_response(req_id: Any, result: Any, is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}

def error_result(exc: Exception) -> Dict[str, Any]:
    code = exc.code if isinstance(exc, SSHMCPError) else "internal"
    return {"success": False, "error": str(exc), "error_type": code}


def _require(args: Dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidArgument(f"{key} is required")
    return value

def _int_arg(args: Dict[str, Any], key: str, required: bool = False) -> Optional[int]:
    if required:
        _require(args, key)
    try:
        return to_optional_int(args.get(key))
    except (TypeError, ValueError):
        raise InvalidArgument(f"{key} must be a number")


def tools_list() -> Dict[str, Any]:
    session_id_param = {"type": "string", "description": "Session id returned by open_session."}
    path_param = {"type": "string", "description": "Remote path."}
    tools = [
        {
            "name": "open_session",
            "description": (
                "Open (or reuse) a persistent SSH session. Returns session_id for the other tools. "
                "Auth precedence: private_key > private_key_path > default keys in ~/.ssh > password."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "host": {"type": "string", "description": "SSH server hostname or IP address."},
                    "port": {"type": "number", "description": "SSH port (default 22)."},
                    "username": {"type": "string", "description": "SSH username (default SSH_MCP_DEFAULT_USERNAME or root)."},
                    "password": {"type": "string", "description": "SSH password. Prefer keys when possible."},
                    "private_key": {"type": "string", "description": "Inline private key (OpenSSH or PEM)."},
                    "private_key_path": {"type": "string", "description": "Path to a private key file."},
                    "passphrase": {"type": "string", "description": "Passphrase for an encrypted private key."},
                    "name": {"type": "string", "description": "Custom session id. Defaults to host:port."},
                },
                "required": ["host"],
            },
        },
        {
            "name": "close_session",
            "description": "Close a session (and its tunnels) by id, or every session if no id is given.",
            "inputSchema": {
                "type": "object",
                "properties": {"session_id": {"type": "string", "description": "Session id to close. Omit to close all."}},
            },
        },
        {
            "name": "list_sessions",
            "description": "List open sessions with host, username and timing info.",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "execute",
            "description": "Run a command on the remote host. Returns stdout, stderr and exit_code.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "command": {"type": "string", "description": "Shell command to execute."},
                    "timeout": {"type": "number", "description": "Timeout in milliseconds (default 30000)."},
                },
                "required": ["session_id", "command"],
            },
        },
        {
            "name": "system_info",
            "description": "Hostname, OS, kernel, uptime, CPU, memory and disk usage of the remote host.",
            "inputSchema": {
                "type": "object",
                "properties": {"session_id": session_id_param},
                "required": ["session_id"],
            },
        },
        {
            "name": "list_dir",
            "description": "List a remote directory via SFTP. Directories first, then by name.",
            "inputSchema": {
                "type": "object",
                "properties": {"session_id": session_id_param, "path": path_param},
                "required": ["session_id", "path"],
            },
        },
        {
            "name": "read_file",
            "description": "Read a remote file via SFTP. utf8 by default, base64 for binary. Refuses files above max_size.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "path": path_param,
                    "encoding": {"type": "string", "enum": ["utf8", "base64"]},
                    "max_size": {"type": "number", "description": "Max file size in bytes (default 1048576)."},
                },
                "required": ["session_id", "path"],
            },
        },
        {
            "name": "write_file",
            "description": "Create or overwrite a remote file via SFTP.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "path": path_param,
                    "content": {"type": "string", "description": "File content."},
                    "encoding": {"type": "string", "enum": ["utf8", "base64"]},
                    "mode": {"type": "number", "description": "Permission bits, e.g. 420 (0o644)."},
                },
                "required": ["session_id", "path", "content"],
            },
        },
        {
            "name": "make_dir",
            "description": "Create a remote directory. recursive=true creates missing parents.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "path": path_param,
                    "recursive": {"type": "boolean"},
                },
                "required": ["session_id", "path"],
            },
        },
        {
            "name": "remove",
            "description": "Remove a remote file or directory. Directories need recursive=true.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "path": path_param,
                    "recursive": {"type": "boolean"},
                },
                "required": ["session_id", "path"],
            },
        },
        {
            "name": "rename",
            "description": "Move or rename a remote file or directory.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "source": {"type": "string"},
                    "destination": {"type": "string"},
                },
                "required": ["session_id", "source", "destination"],
            },
        },
        {
            "name": "stat",
            "description": "Size, permissions, owner, timestamps and type of a remote path.",
            "inputSchema": {
                "type": "object",
                "properties": {"session_id": session_id_param, "path": path_param},
                "required": ["session_id", "path"],
            },
        },
        {
            "name": "generate_keypair",
            "description": "Generate an SSH key pair (ed25519, rsa or ecdsa). Keys are returned, not saved.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["ed25519", "rsa", "ecdsa"]},
                    "bits": {"type": "number", "description": "RSA: default 4096 (min 2048). ECDSA: 256, 384 or 521."},
                    "comment": {"type": "string"},
                    "passphrase": {"type": "string"},
                },
            },
        },
        {
            "name": "create_tunnel",
            "description": (
                "Create a TCP tunnel through a session. local: listen here, forward to dest via SSH. "
                "remote: listen on the server, forward back to dest here."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "direction": {"type": "string", "enum": ["local", "remote"]},
                    "bind_addr": {"type": "string", "description": "Listen address (default 127.0.0.1)."},
                    "bind_port": {"type": "number"},
                    "dest_addr": {"type": "string"},
                    "dest_port": {"type": "number"},
                },
                "required": ["session_id", "direction", "bind_port", "dest_addr", "dest_port"],
            },
        },
        {
            "name": "close_tunnel",
            "description": "Close a tunnel by id.",
            "inputSchema": {
                "type": "object",
                "properties": {"tunnel_id": {"type": "string"}},
                "required": ["tunnel_id"],
            },
        },
        {
            "name": "list_tunnels",
            "description": "List open tunnels.",
            "inputSchema": {"type": "object", "properties": {}},
        },
    ]
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}


def _open_session(args, registry, tunnels):
    return registry.open(
        host=_require(args, "host"),
        port=_int_arg(args, "port"),
        username=args.get("username"),
        password=args.get("password"),
        private_key=args.get("private_key"),
        private_key_path=args.get("private_key_path"),
        passphrase=args.get("passphrase"),
        name=args.get("name"),
    )

def _close_session(args, registry, tunnels):
    session_id = args.get("session_id")
    closed = registry.close(session_id)
    if session_id is None:
        tunnels.close_all()
    if not closed:
        message = f'No session found with id "{session_id}"' if session_id else "No open sessions to close"
    else:
        message = f"Closed {len(closed)} session(s)"
    return {"closed": closed, "message": message}

def _list_sessions(args, registry, tunnels):
    return {"sessions": registry.list()}

def _execute(args, registry, tunnels):
    return remote_exec.execute(
        registry,
        _require(args, "session_id"),
        _require(args, "command"),
        _int_arg(args, "timeout"),
    )

def _system_info(args, registry, tunnels):
    return remote_exec.system_info(registry, _require(args, "session_id"))

def _list_dir(args, registry, tunnels):
    path = _require(args, "path")
    return {"path": path, "entries": fs.list_dir(registry, _require(args, "session_id"), path)}

def _read_file(args, registry, tunnels):
    return fs.read_file(
        registry,
        _require(args, "session_id"),
        _require(args, "path"),
        encoding=args.get("encoding"),
        max_size=_int_arg(args, "max_size"),
    )

def _write_file(args, registry, tunnels):
    content = args.get("content")
    if content is None:
        raise InvalidArgument("content is required")
    return fs.write_file(
        registry,
        _require(args, "session_id"),
        _require(args, "path"),
        str(content),
        encoding=args.get("encoding"),
        mode=_int_arg(args, "mode"),
    )

def _make_dir(args, registry, tunnels):
    return fs.make_dir(
        registry, _require(args, "session_id"), _require(args, "path"), to_bool(args.get("recursive"))
    )

def _remove(args, registry, tunnels):
    return fs.remove(
        registry, _require(args, "session_id"), _require(args, "path"), to_bool(args.get("recursive"))
    )

def _rename(args, registry, tunnels):
    return fs.rename(
        registry, _require(args, "session_id"), _require(args, "source"), _require(args, "destination")
    )

def _stat(args, registry, tunnels):
    return fs.stat(registry, _require(args, "session_id"), _require(args, "path"))

def _generate_keypair(args, registry, tunnels):
    return generate_keypair(
        key_type=args.get("type"),
        bits=_int_arg(args, "bits"),
        comment=args.get("comment"),
        passphrase=args.get("passphrase"),
    )

def _create_tunnel(args, registry, tunnels):
    return tunnels.create(
        session_id=_require(args, "session_id"),
        direction=_require(args, "direction"),
        bind_port=_int_arg(args, "bind_port", required=True),
        dest_addr=_require(args, "dest_addr"),
        dest_port=_int_arg(args, "dest_port", required=True),
        bind_addr=args.get("bind_addr"),
    )

def _close_tunnel(args, registry, tunnels):
    tunnel_id = _require(args, "tunnel_id")
    closed = tunnels.close(tunnel_id)
    return {"tunnel_id": tunnel_id, "closed": closed}

def _list_tunnels(args, registry, tunnels):
    return {"tunnels": tunnels.list()}


TOOL_HANDLERS: Dict[str, Callable[..., Any]] = {
    "open_session": _open_session,
    "close_session": _close_session,
    "list_sessions": _list_sessions,
    "execute": _execute,
    "system_info": _system_info,
    "list_dir": _list_dir,
    "read_file": _read_file,
    "write_file": _write_file,
    "make_dir": _make_dir,
    "remove": _remove,
    "rename": _rename,
    "stat": _stat,
    "generate_keypair": _generate_keypair,
    "create_tunnel": _create_tunnel,
    "close_tunnel": _close_tunnel,
    "list_tunnels": _list_tunnels,
}


def handle_request(request: Dict[str, Any], registry, tunnels) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
                "instructions": INSTRUCTIONS,
            },
        }

    if method == "notifications/initialized": return None
    if method == "ping":
        return {"jsonrpc": "2.0", "id": req_id, "result": {}}
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        handler = TOOL_HANDLERS.get(tool_name)
        if handler is None:
            return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}
        try:
            result = handler(args, registry, tunnels)
            return make_response(req_id, {"success": True, **result})
        except SSHMCPError as exc:
            return make_response(req_id, error_result(exc), is_error=True)
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_response(req_id, error_result(exc), is_error=True)

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
