"""Error taxonomy surfaced to the calling agent.

Every error carries a stable ``code`` that the server puts next to the human
readable message in tool results.
"""

from typing import Iterable, Optional


class SSHMCPError(Exception):
    """Base class for all errors raised by the session layer."""

    code = "error"


class InvalidArgument(SSHMCPError):
    code = "invalid_argument"


class HostPolicyViolation(SSHMCPError):
    code = "host_policy_violation"

    def __init__(self, host: str, patterns: Iterable[str]):
        self.host = host
        self.patterns = list(patterns)
        super().__init__(
            f'Host "{host}" is not in SSH_MCP_ALLOWED_HOSTS. '
            f"Allowed: {', '.join(self.patterns)}"
        )


class AuthenticationUnavailable(SSHMCPError):
    code = "authentication_unavailable"


class ConnectionTimeout(SSHMCPError):
    code = "connection_timeout"

    def __init__(self, host: str, port: int, seconds: float):
        self.host = host
        self.port = port
        super().__init__(f"Connection to {host}:{port} timed out after {seconds:g}s")


class ConnectionFailed(SSHMCPError):
    code = "connection_failed"


class SessionNotFound(SSHMCPError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f'No session with id "{session_id}". Use open_session first.')


class ExecutionFailed(SSHMCPError):
    code = "execution_failed"


class CommandTimeout(SSHMCPError):
    code = "command_timeout"

    def __init__(self, command: str, timeout_ms: int):
        self.command = command
        self.timeout_ms = timeout_ms
        super().__init__(f"Command timed out after {timeout_ms}ms. Command: {command}")


class TransferSizeExceeded(SSHMCPError):
    code = "transfer_size_exceeded"

    def __init__(self, path: str, size: int, limit: int):
        self.path = path
        self.size = size
        self.limit = limit
        super().__init__(
            f"File {path} is {size} bytes, exceeds max {limit} bytes. "
            "Set max_size or SSH_MCP_MAX_FILE_SIZE to increase."
        )


class RemoteObjectNotFound(SSHMCPError):
    code = "remote_object_not_found"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"No such file or directory: {path}")


class RemoteOperationFailed(SSHMCPError):
    code = "remote_operation_failed"


class NotADirectory(SSHMCPError):
    code = "not_a_directory"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"{path} exists but is not a directory")


class IsADirectory(SSHMCPError):
    code = "is_a_directory"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f'"{path}" is a directory. Set recursive=true to remove it.')


class DirectoryNotEmpty(SSHMCPError):
    code = "directory_not_empty"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f'Directory "{path}" is not empty')


class ForwardConflict(SSHMCPError):
    code = "forward_conflict"

    def __init__(self, tunnel_id: str):
        self.tunnel_id = tunnel_id
        super().__init__(f"Forward already exists: {tunnel_id}")


class ForwardFailed(SSHMCPError):
    code = "forward_failed"

    def __init__(self, tunnel_id: str, reason: str, orig_exc: Optional[Exception] = None):
        self.tunnel_id = tunnel_id
        self.orig_exc = orig_exc
        super().__init__(f"Forward {tunnel_id} failed: {reason}")


class InvalidKeyParameters(SSHMCPError):
    code = "invalid_key_parameters"


class UnsupportedKeyType(SSHMCPError):
    code = "unsupported_key_type"

    def __init__(self, key_type: str):
        self.key_type = key_type
        super().__init__(f"Unsupported key type: {key_type}. Use ed25519, rsa, or ecdsa.")
