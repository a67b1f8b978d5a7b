import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import paramiko

from ssh_mcp.auth import Credentials, resolve_credentials, resolve_username
from ssh_mcp.config import (
    CONNECT_TIMEOUT, IDLE_SWEEP_INTERVAL, KEEPALIVE_INTERVAL, PROBE_TIMEOUT_MS,
    ServerConfig,
)
from ssh_mcp.errors import ConnectionFailed, ConnectionTimeout, SessionNotFound, SSHMCPError
from ssh_mcp.exec import run_command
from ssh_mcp.policy import HostPolicy
from ssh_mcp.utils import iso_timestamp, log_error, run_with_timeout

Connector = Callable[[str, int, str, Credentials, float], paramiko.SSHClient]


def make_session_id(host: str, port: int, name: Optional[str] = None) -> str:
    return name or f"{host}:{port}"


def paramiko_connector(strict_host_check: bool) -> Connector:
    def _connect(host: str, port: int, username: str, credentials: Credentials, timeout: float) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if strict_host_check:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": host,
            "port": port,
            "username": username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        connect_kwargs.update(credentials.connect_kwargs())
        try:
            client.connect(**connect_kwargs)
        except Exception:
            client.close()
            raise

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        return client

    return _connect


@dataclass
class SessionEntry:
    session_id: str
    host: str
    port: int
    username: str
    client: paramiko.SSHClient
    connected_at: float
    last_used_at: float
    sftp: Optional[paramiko.SFTPClient] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def touch(self, now: float) -> None:
        # Clock adjustments never move the marker backwards.
        if now > self.last_used_at:
            self.last_used_at = now

    def transport(self) -> Optional[paramiko.Transport]:
        try:
            return self.client.get_transport()
        except Exception:
            return None

    def is_alive(self) -> bool:
        transport = self.transport()
        return bool(transport and transport.is_active())

    def open_sftp(self) -> paramiko.SFTPClient:
        with self.lock:
            if self.sftp is not None and _sftp_closed(self.sftp):
                self.sftp = None
            if self.sftp is None:
                self.sftp = self.client.open_sftp()
            return self.sftp

    def reset_sftp(self) -> None:
        with self.lock:
            sftp, self.sftp = self.sftp, None
        if sftp is not None:
            try:
                sftp.close()
            except Exception:
                pass

    def close(self) -> None:
        self.reset_sftp()
        try:
            self.client.close()
        except Exception:
            pass

    def info(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "connected_at": iso_timestamp(self.connected_at),
            "last_used_at": iso_timestamp(self.last_used_at),
        }


def _sftp_closed(sftp: paramiko.SFTPClient) -> bool:
    channel = sftp.get_channel()
    return channel is None or channel.closed


class SessionRegistry:
    """Owns every open session: creation, reuse, lookup, idle eviction, teardown."""

    def __init__(
        self,
        settings: ServerConfig,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = IDLE_SWEEP_INTERVAL,
    ):
        self.settings = settings
        self.policy = HostPolicy(settings.ALLOWED_HOSTS)
        self.connector = connector or paramiko_connector(settings.STRICT_HOST_CHECK)
        self.clock = clock
        self.sweep_interval = sweep_interval

        self.sessions: Dict[str, SessionEntry] = {}
        self.lock = threading.Lock()
        self._close_hooks: List[Callable[[str], None]] = []

        self._sweeper: Optional[threading.Thread] = None
        self._sweeper_stop = threading.Event()

    # ----- lifecycle hooks -----
    def add_close_hook(self, hook: Callable[[str], None]) -> None:
        self._close_hooks.append(hook)

    def _run_close_hooks(self, session_id: str) -> None:
        for hook in self._close_hooks:
            try:
                hook(session_id)
            except Exception as exc:
                log_error(f"close hook failed for session {session_id}: {exc}")

    # ----- open / reuse -----
    def open(
        self,
        host: str,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        private_key_path: Optional[str] = None,
        passphrase: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        port = int(port or 22)
        username = resolve_username(username, self.settings.DEFAULT_USERNAME)
        session_id = make_session_id(host, port, name)

        self.policy.check(host)

        with self.lock:
            existing = self.sessions.get(session_id)
        if existing is not None:
            if self._probe(existing):
                existing.touch(self.clock())
                return self._open_result(existing, reused=True)
            log_error(f"session {session_id} failed liveness probe, reconnecting")
            self._discard(session_id, existing)

        credentials = resolve_credentials(
            private_key=private_key,
            private_key_path=private_key_path,
            passphrase=passphrase,
            password=password,
            default_key_path=self.settings.DEFAULT_KEY_PATH,
        )

        try:
            client = run_with_timeout(
                lambda: self.connector(host, port, username, credentials, CONNECT_TIMEOUT),
                CONNECT_TIMEOUT,
                name=f"ssh-connect-{host}:{port}",
                on_late_result=self._close_late_client,
            )
        except (TimeoutError, socket.timeout):
            raise ConnectionTimeout(host, port, CONNECT_TIMEOUT)
        except SSHMCPError:
            raise
        except Exception as exc:
            raise ConnectionFailed(f"SSH connection to {host}:{port} failed: {exc}")

        now = self.clock()
        entry = SessionEntry(
            session_id=session_id,
            host=host,
            port=port,
            username=username,
            client=client,
            connected_at=now,
            last_used_at=now,
        )
        with self.lock:
            replaced = self.sessions.get(session_id)
            self.sessions[session_id] = entry
        if replaced is not None:
            self._discard(session_id, replaced)
        log_error(f"session {session_id} opened ({username}@{host}:{port}, auth={credentials.describe()})")
        self.start_sweeper()
        return self._open_result(entry, reused=False)

    @staticmethod
    def _close_late_client(client: paramiko.SSHClient) -> None:
        log_error("connection finished after its timeout; closing it")
        try:
            client.close()
        except Exception as exc:
            log_error(f"closing late connection failed: {exc}")

    def _probe(self, entry: SessionEntry) -> bool:
        if not entry.is_alive():
            return False
        try:
            run_command(entry, "echo __alive__", PROBE_TIMEOUT_MS)
            return True
        except SSHMCPError:
            return False

    @staticmethod
    def _open_result(entry: SessionEntry, reused: bool) -> Dict[str, Any]:
        return {
            "session_id": entry.session_id,
            "host": entry.host,
            "port": entry.port,
            "username": entry.username,
            "reused": reused,
        }

    # ----- lookup -----
    def get(self, session_id: str) -> SessionEntry:
        with self.lock:
            entry = self.sessions.get(session_id)
        if entry is None:
            raise SessionNotFound(session_id)
        entry.touch(self.clock())
        return entry

    def is_current(self, session_id: str, entry: SessionEntry) -> bool:
        with self.lock:
            return self.sessions.get(session_id) is entry

    def list(self) -> List[Dict[str, Any]]:
        self.reap_dead()
        with self.lock:
            entries = list(self.sessions.values())
        return [entry.info() for entry in entries]

    # ----- teardown -----
    def _discard(self, session_id: str, entry: SessionEntry) -> None:
        with self.lock:
            if self.sessions.get(session_id) is entry:
                del self.sessions[session_id]
        self._run_close_hooks(session_id)
        entry.close()

    def close(self, session_id: Optional[str] = None) -> List[str]:
        if session_id is not None:
            with self.lock:
                entry = self.sessions.get(session_id)
            if entry is None:
                return []
            self._discard(session_id, entry)
            log_error(f"session {session_id} closed")
            self.stop_sweeper_if_empty()
            return [session_id]

        with self.lock:
            snapshot = list(self.sessions.items())
        for sid, entry in snapshot:
            self._discard(sid, entry)
        if snapshot:
            log_error(f"closed {len(snapshot)} session(s)")
        self.stop_sweeper_if_empty()
        return [sid for sid, _ in snapshot]

    def shutdown(self) -> None:
        self._sweeper_stop.set()
        self.close()

    # ----- idle sweep -----
    def sweep(self) -> List[str]:
        now = self.clock()
        idle_limit = self.settings.IDLE_TIMEOUT_MS / 1000.0
        with self.lock:
            snapshot = list(self.sessions.items())

        evicted = []
        for sid, entry in snapshot:
            if now - entry.last_used_at > idle_limit:
                reason = "idle timeout"
            elif not entry.is_alive():
                reason = "transport closed"
            else:
                continue
            self._discard(sid, entry)
            evicted.append(sid)
            log_error(f"session {sid} evicted: {reason}")
        return evicted

    def reap_dead(self) -> List[str]:
        """Drop sessions whose transport has terminated, without waiting for the sweep."""
        with self.lock:
            dead = [(sid, entry) for sid, entry in self.sessions.items() if not entry.is_alive()]
        for sid, entry in dead:
            self._discard(sid, entry)
            log_error(f"session {sid} evicted: transport closed")
        if dead:
            self.stop_sweeper_if_empty()
        return [sid for sid, _ in dead]

    def start_sweeper(self) -> None:
        with self.lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._sweeper_stop = threading.Event()
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                args=(self._sweeper_stop,),
                name="ssh-idle-sweep",
                daemon=True,
            )
            self._sweeper.start()

    def stop_sweeper_if_empty(self) -> bool:
        with self.lock:
            if self.sessions:
                return False
            self._sweeper_stop.set()
            self._sweeper = None
        return True

    @property
    def sweeper_running(self) -> bool:
        sweeper = self._sweeper
        return sweeper is not None and sweeper.is_alive() and not self._sweeper_stop.is_set()

    def _sweep_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception as exc:
                log_error(f"idle sweep error: {exc}")
            if self.stop_sweeper_if_empty():
                break
