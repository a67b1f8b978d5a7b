import sys
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")


def log_error(message: str) -> None:
    print(f"[SSH-MCP] {message}", file=sys.stderr, flush=True)

def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default

def to_optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("expected a number, got boolean")
    if isinstance(value, str):
        text = value.strip()
        # Accept "0o644" / "0644" style octal for file modes.
        if text.startswith(("0o", "0O")):
            return int(text, 8)
        if len(text) > 1 and text.startswith("0") and text.isdigit():
            return int(text, 8)
        return int(text)
    return int(value)

def iso_timestamp(epoch_seconds: Optional[float]) -> Optional[str]:
    if epoch_seconds is None:
        return None
    stamp = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")

def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit]

def run_with_timeout(
    func: Callable[[], T],
    timeout: float,
    name: str = "ssh-call",
    on_late_result: Optional[Callable[[T], None]] = None,
) -> T:
    """Run ``func`` on a helper thread and wait at most ``timeout`` seconds.

    Raises ``TimeoutError`` when the deadline passes. The helper thread is a
    daemon and is abandoned; nothing is sent to the peer. If it later returns
    a value anyway, that value is handed to ``on_late_result`` so the caller
    can release it.
    """
    done = threading.Event()
    lock = threading.Lock()
    outcome = {}

    def _target() -> None:
        late = False
        try:
            value = func()
        except BaseException as exc:
            with lock:
                outcome["error"] = exc
                done.set()
            return
        with lock:
            outcome["value"] = value
            late = outcome.get("abandoned", False)
            done.set()
        if late and on_late_result is not None:
            try:
                on_late_result(value)
            except Exception as exc:
                log_error(f"{name} late result cleanup failed: {exc}")

    worker = threading.Thread(target=_target, name=name, daemon=True)
    worker.start()
    if not done.wait(timeout):
        with lock:
            if not done.is_set():
                outcome["abandoned"] = True
        if outcome.get("abandoned"):
            raise TimeoutError(f"{name} did not finish within {timeout:g}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]
