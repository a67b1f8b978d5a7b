import os
from typing import List, Optional

# ========= Static config =========
CONNECT_TIMEOUT = 15.0
PROBE_TIMEOUT_MS = 5000
KEEPALIVE_INTERVAL = 30
IDLE_SWEEP_INTERVAL = 60.0
BUFFER_SIZE = 16384
RELAY_POLL_INTERVAL = 1.0

DEFAULT_USERNAME = "root"
DEFAULT_IDLE_TIMEOUT_MS = 1_800_000
DEFAULT_EXEC_TIMEOUT_MS = 30_000
DEFAULT_MAX_FILE_SIZE = 1_048_576
SYSTEM_INFO_TIMEOUT_MS = 15_000
MAX_COMMAND_PREVIEW_CHARS = 100

DEFAULT_BIND_ADDR = "127.0.0.1"
MAX_REMOVE_DEPTH = 64

DEFAULT_KEY_CANDIDATES = (
    os.path.join("~", ".ssh", "id_ed25519"),
    os.path.join("~", ".ssh", "id_rsa"),
    os.path.join("~", ".ssh", "id_ecdsa"),
)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def parse_host_patterns(raw: Optional[str]) -> Optional[List[str]]:
    if raw is None:
        return None
    patterns = [item.strip() for item in raw.split(",") if item.strip()]
    return patterns or None


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.DEFAULT_USERNAME: Optional[str] = None
        self.DEFAULT_KEY_PATH: Optional[str] = None
        self.IDLE_TIMEOUT_MS: int = DEFAULT_IDLE_TIMEOUT_MS
        self.EXEC_TIMEOUT_MS: int = DEFAULT_EXEC_TIMEOUT_MS
        self.STRICT_HOST_CHECK: bool = False  # accept any host key unless asked
        self.ALLOWED_HOSTS: Optional[List[str]] = None
        self.MAX_FILE_SIZE: int = DEFAULT_MAX_FILE_SIZE

    def load_from_env(self):
        self.DEFAULT_USERNAME = os.environ.get("SSH_MCP_DEFAULT_USERNAME", self.DEFAULT_USERNAME) or None
        self.DEFAULT_KEY_PATH = os.environ.get("SSH_MCP_DEFAULT_KEY", self.DEFAULT_KEY_PATH) or None
        self.IDLE_TIMEOUT_MS = _env_int("SSH_MCP_IDLE_TIMEOUT", self.IDLE_TIMEOUT_MS)
        self.EXEC_TIMEOUT_MS = _env_int("SSH_MCP_EXEC_TIMEOUT", self.EXEC_TIMEOUT_MS)
        self.MAX_FILE_SIZE = _env_int("SSH_MCP_MAX_FILE_SIZE", self.MAX_FILE_SIZE)

        strict_env = os.environ.get("SSH_MCP_STRICT_HOST_CHECK")
        if strict_env is not None:
            self.STRICT_HOST_CHECK = strict_env.lower() in ("true", "1", "yes")

        allowed_env = os.environ.get("SSH_MCP_ALLOWED_HOSTS")
        if allowed_env is not None:
            self.ALLOWED_HOSTS = parse_host_patterns(allowed_env)
        return self

# Global instance
config = ServerConfig()
