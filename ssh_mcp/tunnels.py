import select
import socket
import socketserver
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ssh_mcp.config import BUFFER_SIZE, CONNECT_TIMEOUT, DEFAULT_BIND_ADDR, RELAY_POLL_INTERVAL
from ssh_mcp.errors import ForwardConflict, ForwardFailed, InvalidArgument, SessionNotFound
from ssh_mcp.utils import log_error

DIRECTIONS = ("local", "remote")


def make_tunnel_id(direction: str, bind_addr: str, bind_port: int, dest_addr: str, dest_port: int) -> str:
    return f"{direction}:{bind_addr}:{bind_port}->{dest_addr}:{dest_port}"


def relay(sock: socket.socket, chan, stop_event: threading.Event) -> None:
    """Copy bytes both ways between a TCP socket and an SSH channel until one side closes."""
    try:
        while not stop_event.is_set():
            readable, _, _ = select.select([sock, chan], [], [], RELAY_POLL_INTERVAL)
            if sock in readable:
                data = sock.recv(BUFFER_SIZE)
                if not data:
                    break
                chan.sendall(data)
            if chan in readable:
                data = chan.recv(BUFFER_SIZE)
                if not data:
                    break
                sock.sendall(data)
    except (OSError, EOFError) as exc:
        log_error(f"relay ended with error: {exc}")
    finally:
        for closable in (chan, sock):
            try:
                closable.close()
            except Exception:
                pass


class _ThreadedTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


@dataclass
class TunnelEntry:
    tunnel_id: str
    direction: str
    session_id: str
    bind_addr: str
    bind_port: int
    dest_addr: str
    dest_port: int
    listening_port: int = 0
    server: Optional[socketserver.TCPServer] = None
    server_thread: Optional[threading.Thread] = None
    transport: Any = None
    stop_event: threading.Event = field(default_factory=threading.Event)

    def info(self) -> Dict[str, Any]:
        return {
            "tunnel_id": self.tunnel_id,
            "direction": self.direction,
            "bind_addr": self.bind_addr,
            "bind_port": self.bind_port,
            "listening_port": self.listening_port,
            "dest_addr": self.dest_addr,
            "dest_port": self.dest_port,
            "session_id": self.session_id,
        }


class TunnelManager:
    def __init__(self, registry):
        self.registry = registry
        self.tunnels: Dict[str, TunnelEntry] = {}
        self.lock = threading.Lock()
        registry.add_close_hook(self.close_for_session)

    def create(
        self,
        session_id: str,
        direction: str,
        bind_port: int,
        dest_addr: str,
        dest_port: int,
        bind_addr: Optional[str] = None,
    ) -> Dict[str, Any]:
        direction = (direction or "").strip().lower()
        if direction not in DIRECTIONS:
            raise InvalidArgument("direction must be one of: local, remote")
        bind_addr = bind_addr or DEFAULT_BIND_ADDR
        tunnel_id = make_tunnel_id(direction, bind_addr, int(bind_port), dest_addr, int(dest_port))

        with self.lock:
            if tunnel_id in self.tunnels:
                raise ForwardConflict(tunnel_id)

        session = self.registry.get(session_id)
        transport = session.transport()
        if transport is None or not transport.is_active():
            raise ForwardFailed(tunnel_id, f"transport for session {session_id} is not active")

        tunnel = TunnelEntry(
            tunnel_id=tunnel_id,
            direction=direction,
            session_id=session_id,
            bind_addr=bind_addr,
            bind_port=int(bind_port),
            dest_addr=dest_addr,
            dest_port=int(dest_port),
            transport=transport,
        )
        if direction == "local":
            self._start_local(tunnel)
        else:
            self._start_remote(tunnel)

        with self.lock:
            # The session may have closed while the listener was starting; its
            # close hook has then already run and would never see this tunnel.
            if not self.registry.is_current(session_id, session):
                failure = SessionNotFound(session_id)
            elif tunnel_id in self.tunnels:
                failure = ForwardConflict(tunnel_id)
            else:
                self.tunnels[tunnel_id] = tunnel
                failure = None
        if failure is not None:
            self._stop(tunnel)
            raise failure

        log_error(f"tunnel {tunnel_id} open on session {session_id} (port {tunnel.listening_port})")
        return tunnel.info()

    # ----- local: listen here, forward through the session -----
    def _start_local(self, tunnel: TunnelEntry) -> None:
        manager_tunnel = tunnel

        class ForwardHandler(socketserver.BaseRequestHandler):
            def handle(self):
                try:
                    chan = manager_tunnel.transport.open_channel(
                        "direct-tcpip",
                        (manager_tunnel.dest_addr, manager_tunnel.dest_port),
                        (manager_tunnel.bind_addr, manager_tunnel.listening_port),
                    )
                except Exception as exc:
                    log_error(f"tunnel {manager_tunnel.tunnel_id} channel open failed: {exc}")
                    chan = None
                if chan is None:
                    try:
                        self.request.close()
                    except Exception:
                        pass
                    return
                relay(self.request, chan, manager_tunnel.stop_event)

        try:
            server = _ThreadedTCPServer((tunnel.bind_addr, tunnel.bind_port), ForwardHandler)
        except OSError as exc:
            raise ForwardFailed(tunnel.tunnel_id, f"cannot listen on {tunnel.bind_addr}:{tunnel.bind_port}: {exc}", exc)

        tunnel.server = server
        tunnel.listening_port = server.server_address[1]
        tunnel.server_thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.2},
            name=f"ssh-tunnel-{tunnel.listening_port}",
            daemon=True,
        )
        tunnel.server_thread.start()

    # ----- remote: listen on the peer, forward back to a local destination -----
    def _start_remote(self, tunnel: TunnelEntry) -> None:
        try:
            granted = tunnel.transport.request_port_forward(
                tunnel.bind_addr,
                tunnel.bind_port,
                handler=self._make_remote_dispatcher(tunnel.session_id),
            )
        except Exception as exc:
            raise ForwardFailed(tunnel.tunnel_id, f"remote forward request rejected: {exc}", exc)
        tunnel.listening_port = int(granted or tunnel.bind_port)

    def _make_remote_dispatcher(self, session_id: str):
        # paramiko keeps a single forward handler per transport, so inbound
        # channels are routed by the port they arrived on.
        def _dispatch(chan, origin: Tuple[str, int], server: Tuple[str, int]) -> None:
            tunnel = self._find_remote(session_id, server[1])
            if tunnel is None:
                log_error(f"inbound forward on port {server[1]} has no tunnel; closing")
                chan.close()
                return
            threading.Thread(
                target=self._accept_remote,
                args=(tunnel, chan),
                name=f"ssh-rtunnel-{tunnel.listening_port}",
                daemon=True,
            ).start()

        return _dispatch

    def _find_remote(self, session_id: str, port: int) -> Optional[TunnelEntry]:
        with self.lock:
            for tunnel in self.tunnels.values():
                if (
                    tunnel.direction == "remote"
                    and tunnel.session_id == session_id
                    and tunnel.listening_port == port
                ):
                    return tunnel
        return None

    def _accept_remote(self, tunnel: TunnelEntry, chan) -> None:
        try:
            sock = socket.create_connection((tunnel.dest_addr, tunnel.dest_port), timeout=CONNECT_TIMEOUT)
            sock.settimeout(None)
        except OSError as exc:
            log_error(f"tunnel {tunnel.tunnel_id} local connect failed: {exc}")
            chan.close()
            return
        relay(sock, chan, tunnel.stop_event)

    # ----- teardown -----
    def _stop(self, tunnel: TunnelEntry) -> None:
        tunnel.stop_event.set()
        if tunnel.server is not None:
            try:
                tunnel.server.shutdown()
                tunnel.server.server_close()
            except Exception as exc:
                log_error(f"tunnel {tunnel.tunnel_id} listener close failed: {exc}")
        elif tunnel.direction == "remote" and tunnel.transport is not None:
            try:
                if not tunnel.transport.is_active():
                    return
                if self._remote_siblings(tunnel):
                    # cancel_port_forward drops the transport-wide handler the
                    # other remote tunnels of this session still rely on.
                    tunnel.transport.global_request(
                        "cancel-tcpip-forward", (tunnel.bind_addr, tunnel.listening_port), wait=True
                    )
                else:
                    tunnel.transport.cancel_port_forward(tunnel.bind_addr, tunnel.listening_port)
            except Exception as exc:
                log_error(f"tunnel {tunnel.tunnel_id} cancel failed: {exc}")

    def _remote_siblings(self, tunnel: TunnelEntry) -> bool:
        with self.lock:
            return any(
                other is not tunnel
                and other.direction == "remote"
                and other.session_id == tunnel.session_id
                for other in self.tunnels.values()
            )

    def close(self, tunnel_id: str) -> bool:
        with self.lock:
            tunnel = self.tunnels.pop(tunnel_id, None)
        if tunnel is None:
            return False
        self._stop(tunnel)
        log_error(f"tunnel {tunnel_id} closed")
        return True

    def close_for_session(self, session_id: str) -> List[str]:
        with self.lock:
            owned = [tid for tid, tunnel in self.tunnels.items() if tunnel.session_id == session_id]
        return [tid for tid in owned if self.close(tid)]

    def close_all(self) -> List[str]:
        with self.lock:
            ids = list(self.tunnels.keys())
        return [tid for tid in ids if self.close(tid)]

    def list(self) -> List[Dict[str, Any]]:
        self.registry.reap_dead()
        with self.lock:
            return [tunnel.info() for tunnel in self.tunnels.values()]
