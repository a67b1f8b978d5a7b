#!/usr/bin/env python3
"""
SSH session MCP server.

- Persistent, reusable SSH sessions keyed by host:port or a custom name
- Command execution with per-call timeouts
- SFTP file operations (list/read/write/mkdir/remove/rename/stat)
- Local and remote TCP tunnels bound to a session
- SSH key pair generation (ed25519, rsa, ecdsa)
"""

from ssh_mcp.main import main


if __name__ == "__main__":
    main()
