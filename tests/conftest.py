import errno
import posixpath
import stat
import threading
from types import SimpleNamespace

import pytest

from ssh_mcp.config import ServerConfig
from ssh_mcp.ssh import SessionRegistry


class FakeExecChannel:
    """Session channel whose output is produced by ``runner(command)``.

    ``runner`` returns ``(stdout, stderr, status)`` or ``None`` to hang until
    ``release`` is set.
    """

    def __init__(self, runner, release):
        self.runner = runner
        self.release = release
        self.status_event = threading.Event()
        self.command = None
        self.closed = False
        self.hang = False
        self._stdout = bytearray()
        self._stderr = bytearray()
        self._status = 0

    def exec_command(self, command):
        self.command = command
        outcome = self.runner(command)
        if outcome is None:
            self.hang = True
            return
        stdout, stderr, status = outcome
        self._stdout.extend(stdout)
        self._stderr.extend(stderr)
        self._status = status
        self.status_event.set()

    def shutdown_write(self):
        pass

    def recv_ready(self):
        return bool(self._stdout)

    def recv(self, size):
        data = bytes(self._stdout[:size])
        del self._stdout[:size]
        return data

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, size):
        data = bytes(self._stderr[:size])
        del self._stderr[:size]
        return data

    def exit_status_ready(self):
        return not self.hang or self.release.is_set()

    def recv_exit_status(self):
        return self._status

    def close(self):
        self.closed = True


def default_runner(command):
    if command == "echo __alive__":
        return b"__alive__\n", b"", 0
    return b"", b"", 0


class FakeTransport:
    def __init__(self, runner=default_runner):
        self.active = True
        self.runner = runner
        self.release = threading.Event()
        self.exec_channels = []
        self.keepalive = None
        self.channel_factory = None
        self.opened_channels = []
        self.forward_handler = None
        self.forward_requests = []
        self.cancelled = []
        self.global_requests = []
        self.granted_port = 40000
        self.forward_error = None

    def is_active(self):
        return self.active

    def set_keepalive(self, interval):
        self.keepalive = interval

    def open_session(self):
        if not self.active:
            raise EOFError("transport closed")
        channel = FakeExecChannel(self.runner, self.release)
        self.exec_channels.append(channel)
        return channel

    def open_channel(self, kind, dest_addr, src_addr):
        self.opened_channels.append((kind, dest_addr, src_addr))
        return self.channel_factory(dest_addr)

    def request_port_forward(self, address, port, handler=None):
        if self.forward_error is not None:
            raise self.forward_error
        self.forward_handler = handler
        granted = port or self.granted_port
        self.forward_requests.append((address, granted))
        return granted

    def cancel_port_forward(self, address, port):
        # paramiko clears the transport-wide handler before cancelling.
        self.forward_handler = None
        self.cancelled.append((address, port))

    def global_request(self, kind, data=None, wait=True):
        self.global_requests.append((kind, data))


def _attrs(name, node):
    return SimpleNamespace(
        filename=name,
        st_mode=node["mode"],
        st_size=len(node.get("data", b"")),
        st_mtime=1_700_000_000,
        st_atime=1_700_000_100,
        st_uid=1000,
        st_gid=1000,
    )


class _ReadHandle:
    def __init__(self, data):
        self.data = data
        self.prefetched = None

    def prefetch(self, size):
        self.prefetched = size

    def read(self):
        return self.data

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class _WriteHandle:
    def __init__(self, sftp, path):
        self.sftp = sftp
        self.path = path
        self.buffer = bytearray()

    def write(self, data):
        self.buffer.extend(data)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.sftp.nodes[self.path] = {"mode": stat.S_IFREG | 0o644, "data": bytes(self.buffer)}
        return False


def _missing(path):
    return OSError(errno.ENOENT, "No such file", path)


class FakeSFTP:
    """In-memory SFTP tree keyed by absolute path."""

    def __init__(self):
        self.nodes = {"/": {"mode": stat.S_IFDIR | 0o755}}
        self.closed = False
        self.opened = []
        self.removed = []

    # ----- helpers -----
    def add_dir(self, path):
        self.nodes[path] = {"mode": stat.S_IFDIR | 0o755}

    def add_file(self, path, data=b"", mode=0o644):
        self.nodes[path] = {"mode": stat.S_IFREG | mode, "data": data}

    def add_link(self, path, target):
        self.nodes[path] = {"mode": stat.S_IFLNK | 0o777, "target": target}

    def _node(self, path):
        node = self.nodes.get(posixpath.normpath(path))
        if node is None:
            raise _missing(path)
        return node

    def _children(self, path):
        prefix = posixpath.normpath(path).rstrip("/") + "/"
        return sorted(
            p[len(prefix):] for p in self.nodes
            if p.startswith(prefix) and p != prefix and "/" not in p[len(prefix):]
        )

    # ----- SFTPClient surface -----
    def get_channel(self):
        return SimpleNamespace(closed=self.closed)

    def close(self):
        self.closed = True

    def stat(self, path):
        node = self._node(path)
        if stat.S_ISLNK(node["mode"]):
            return self.stat(node["target"])
        return _attrs(posixpath.basename(path), node)

    def lstat(self, path):
        return _attrs(posixpath.basename(path), self._node(path))

    def listdir(self, path):
        self._node(path)
        return self._children(path)

    def listdir_attr(self, path):
        base = posixpath.normpath(path)
        if not stat.S_ISDIR(self._node(base)["mode"]):
            raise OSError(errno.ENOTDIR, "Not a directory", path)
        return [_attrs(name, self.nodes[posixpath.join(base, name)]) for name in self._children(base)]

    def open(self, path, mode="r"):
        path = posixpath.normpath(path)
        self.opened.append((path, mode))
        if "w" in mode:
            self._node(posixpath.dirname(path))
            return _WriteHandle(self, path)
        return _ReadHandle(self._node(path).get("data", b""))

    def mkdir(self, path, mode=0o777):
        path = posixpath.normpath(path)
        if path in self.nodes:
            raise OSError("Failure")
        if posixpath.dirname(path) not in self.nodes:
            raise _missing(path)
        self.add_dir(path)

    def rmdir(self, path):
        path = posixpath.normpath(path)
        self._node(path)
        if self._children(path):
            raise OSError("Failure")
        del self.nodes[path]
        self.removed.append(path)

    def remove(self, path):
        path = posixpath.normpath(path)
        node = self._node(path)
        if stat.S_ISDIR(node["mode"]):
            raise OSError("Failure")
        del self.nodes[path]
        self.removed.append(path)

    def rename(self, source, destination):
        source = posixpath.normpath(source)
        destination = posixpath.normpath(destination)
        self._node(source)
        for path in list(self.nodes):
            if path == source or path.startswith(source + "/"):
                self.nodes[destination + path[len(source):]] = self.nodes.pop(path)

    def chmod(self, path, mode):
        node = self._node(path)
        node["mode"] = stat.S_IFMT(node["mode"]) | mode


class FakeClient:
    def __init__(self, transport=None, sftp_factory=FakeSFTP):
        self.transport = transport or FakeTransport()
        self.sftp_factory = sftp_factory
        self.sftp_opens = 0
        self.closed = False
        self.sftp = None

    def get_transport(self):
        return self.transport

    def open_sftp(self):
        self.sftp_opens += 1
        if self.sftp is None or self.sftp.closed:
            fresh = self.sftp_factory()
            if self.sftp is not None:
                fresh.nodes = self.sftp.nodes
            self.sftp = fresh
        return self.sftp

    def close(self):
        self.closed = True
        self.transport.active = False


class FakeConnector:
    def __init__(self):
        self.calls = []
        self.clients = []

    def __call__(self, host, port, username, credentials, timeout):
        self.calls.append((host, port, username, credentials.method))
        client = FakeClient()
        self.clients.append(client)
        return client


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def settings():
    return ServerConfig()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(settings, connector, clock):
    reg = SessionRegistry(settings, connector=connector, clock=clock)
    yield reg
    reg.shutdown()


@pytest.fixture
def session(registry):
    """An open session on host1:22 authenticated with a password."""
    registry.open("host1", password="secret")
    return registry.get("host1:22")
