import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ssh_mcp.config import BUFFER_SIZE, MAX_COMMAND_PREVIEW_CHARS, SYSTEM_INFO_TIMEOUT_MS
from ssh_mcp.errors import CommandTimeout, ExecutionFailed
from ssh_mcp.utils import log_error, truncate

SYSTEM_INFO_COMMAND = " && ".join([
    'echo "=== Hostname ===" && hostname',
    'echo "=== OS ===" && (cat /etc/os-release 2>/dev/null | grep -E "^(NAME|VERSION)=" || uname -a)',
    'echo "=== Kernel ===" && uname -r',
    'echo "=== Uptime ===" && uptime',
    'echo "=== CPU ===" && (nproc 2>/dev/null && cat /proc/cpuinfo 2>/dev/null | grep "model name" | head -1 || sysctl -n hw.ncpu 2>/dev/null)',
    'echo "=== Memory ===" && (free -h 2>/dev/null || vm_stat 2>/dev/null)',
    'echo "=== Disk ===" && df -h / 2>/dev/null',
])


@dataclass
class CommandCapture:
    command: str
    stdout_chunks: List[bytes] = field(default_factory=list)
    stderr_chunks: List[bytes] = field(default_factory=list)
    exit_code: Optional[int] = None
    error: Optional[Exception] = None
    done_event: threading.Event = field(default_factory=threading.Event)

    def result(self) -> Dict[str, Any]:
        return {
            "stdout": _trim_newline(b"".join(self.stdout_chunks).decode("utf-8", errors="replace")),
            "stderr": _trim_newline(b"".join(self.stderr_chunks).decode("utf-8", errors="replace")),
            "exit_code": self.exit_code,
        }


def _trim_newline(text: str) -> str:
    return text[:-1] if text.endswith("\n") else text


def _reader_loop(transport, capture: CommandCapture) -> None:
    channel = None
    try:
        channel = transport.open_session()
        channel.exec_command(capture.command)
        channel.shutdown_write()
        while True:
            progressed = False
            if channel.recv_ready():
                data = channel.recv(BUFFER_SIZE)
                if data:
                    capture.stdout_chunks.append(data)
                    progressed = True
            if channel.recv_stderr_ready():
                data = channel.recv_stderr(BUFFER_SIZE)
                if data:
                    capture.stderr_chunks.append(data)
                    progressed = True
            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                break
            if not progressed:
                channel.status_event.wait(0.05)

        status = channel.recv_exit_status()
        # -1 means the server closed the channel without reporting a status.
        capture.exit_code = 0 if status is None or status < 0 else status
    except Exception as exc:
        capture.error = exc
    finally:
        if channel is not None:
            try:
                channel.close()
            except Exception:
                pass
        capture.done_event.set()


def run_command(entry, command: str, timeout_ms: int) -> Dict[str, Any]:
    """Run ``command`` on the session transport and wait for its result.

    The wait is bounded by ``timeout_ms``; on expiry the caller gets
    ``CommandTimeout`` and the remote process is left running.
    """
    transport = entry.transport()
    if transport is None or not transport.is_active():
        raise ExecutionFailed(f"Exec failed: transport for session {entry.session_id} is not active")

    capture = CommandCapture(command=command)
    reader = threading.Thread(
        target=_reader_loop,
        args=(transport, capture),
        name=f"ssh-exec-{entry.session_id}",
        daemon=True,
    )
    reader.start()

    if not capture.done_event.wait(max(timeout_ms, 0) / 1000.0):
        log_error(f"command timed out on session {entry.session_id} after {timeout_ms}ms")
        raise CommandTimeout(truncate(command, MAX_COMMAND_PREVIEW_CHARS), timeout_ms)
    if capture.error is not None:
        raise ExecutionFailed(f"Exec failed: {capture.error}")
    return capture.result()


def execute(registry, session_id: str, command: str, timeout: Optional[int] = None) -> Dict[str, Any]:
    entry = registry.get(session_id)
    timeout_ms = registry.settings.EXEC_TIMEOUT_MS if timeout is None else int(timeout)
    return run_command(entry, command, timeout_ms)


def system_info(registry, session_id: str) -> Dict[str, Any]:
    return execute(registry, session_id, SYSTEM_INFO_COMMAND, SYSTEM_INFO_TIMEOUT_MS)
