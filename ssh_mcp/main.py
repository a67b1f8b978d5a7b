import sys
import io
import json
import argparse
from ssh_mcp.config import config, parse_host_patterns
from ssh_mcp.utils import log_error
from ssh_mcp.server import handle_request

registry = None
tunnels = None

# Force UTF-8 I/O so remote output with non-ASCII characters survives on any platform
_stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
_stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)


def _write_response(response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        _stdout.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        # Fallback: escape all non-ASCII to guarantee safe output
        try:
            _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
            _stdout.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SSH session MCP server (persistent sessions, SFTP, tunnels, key generation)"
    )
    parser.add_argument("--default-user", help="Default SSH username (overrides SSH_MCP_DEFAULT_USERNAME env)")
    parser.add_argument("--default-key", help="Default private key path (overrides SSH_MCP_DEFAULT_KEY env)")
    parser.add_argument("--idle-timeout", type=int, help="Idle session timeout in ms (overrides SSH_MCP_IDLE_TIMEOUT env)")
    parser.add_argument("--exec-timeout", type=int, help="Default command timeout in ms (overrides SSH_MCP_EXEC_TIMEOUT env)")
    parser.add_argument("--strict-host-check", action="store_true", help="Reject hosts missing from known_hosts")
    parser.add_argument("--no-strict-host-check", action="store_true", help="Accept unknown host keys")
    parser.add_argument("--allowed-hosts", help="Comma-separated host allowlist, e.g. 'db1,*.example.com'")
    parser.add_argument("--max-file-size", type=int, help="Default read_file size limit in bytes")
    return parser


def apply_args(args) -> None:
    if args.default_user: config.DEFAULT_USERNAME = args.default_user
    if args.default_key: config.DEFAULT_KEY_PATH = args.default_key
    if args.idle_timeout: config.IDLE_TIMEOUT_MS = args.idle_timeout
    if args.exec_timeout: config.EXEC_TIMEOUT_MS = args.exec_timeout
    if args.max_file_size: config.MAX_FILE_SIZE = args.max_file_size
    if args.allowed_hosts is not None: config.ALLOWED_HOSTS = parse_host_patterns(args.allowed_hosts)

    if args.no_strict_host_check:
        config.STRICT_HOST_CHECK = False
    elif args.strict_host_check:
        config.STRICT_HOST_CHECK = True


def main() -> None:
    global registry, tunnels
    from ssh_mcp.ssh import SessionRegistry
    from ssh_mcp.tunnels import TunnelManager

    # Pre-load from environment
    config.load_from_env()
    parser = build_parser()
    apply_args(parser.parse_args())

    if config.IDLE_TIMEOUT_MS <= 0:
        parser.error("idle timeout must be positive")
    if config.EXEC_TIMEOUT_MS <= 0:
        parser.error("exec timeout must be positive")

    registry = SessionRegistry(config)
    tunnels = TunnelManager(registry)

    log_error(
        f"SSH MCP started. idle_timeout={config.IDLE_TIMEOUT_MS}ms exec_timeout={config.EXEC_TIMEOUT_MS}ms "
        f"strict_host_check={config.STRICT_HOST_CHECK} allowed_hosts={config.ALLOWED_HOSTS or 'any'}"
    )

    for line in _stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            _write_response({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": f"Parse error: {exc}"}})
            continue

        try:
            response = handle_request(request, registry, tunnels)
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            # Still answer so the client doesn't hang on this id
            req_id = request.get("id") if isinstance(request, dict) else None
            response = {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32603, "message": f"Internal error: {exc}"}}
        if response is not None:
            _write_response(response)

    log_error("shutting down...")
    tunnels.close_all()
    registry.shutdown()

if __name__ == "__main__":
    main()
