import base64
import binascii
import errno
import posixpath
import stat as stat_mod
from typing import Any, Dict, List, Optional

import paramiko

from ssh_mcp.config import MAX_REMOVE_DEPTH
from ssh_mcp.errors import (
    DirectoryNotEmpty, InvalidArgument, IsADirectory, NotADirectory, RemoteObjectNotFound,
    RemoteOperationFailed, TransferSizeExceeded,
)
from ssh_mcp.utils import iso_timestamp, log_error

_ENCODINGS = {"utf8": "utf8", "utf-8": "utf8", "base64": "base64"}

_TYPE_CHARS = {
    stat_mod.S_IFDIR: "d",
    stat_mod.S_IFLNK: "l",
    stat_mod.S_IFREG: "-",
}


def _normalize_encoding(encoding: Optional[str]) -> str:
    key = (encoding or "utf8").strip().lower()
    if key not in _ENCODINGS:
        raise InvalidArgument(f"encoding must be utf8 or base64, got: {encoding}")
    return _ENCODINGS[key]


def format_permissions(mode: Optional[int]) -> str:
    mode = mode or 0
    type_char = _TYPE_CHARS.get(stat_mod.S_IFMT(mode), "?")
    bits = ""
    for mask, char in (
        (0o400, "r"), (0o200, "w"), (0o100, "x"),
        (0o040, "r"), (0o020, "w"), (0o010, "x"),
        (0o004, "r"), (0o002, "w"), (0o001, "x"),
    ):
        bits += char if mode & mask else "-"
    return type_char + bits


def file_type(mode: Optional[int]) -> str:
    mode = mode or 0
    if stat_mod.S_ISDIR(mode):
        return "directory"
    if stat_mod.S_ISLNK(mode):
        return "symlink"
    if stat_mod.S_ISREG(mode):
        return "file"
    return "other"


def _remote_error(entry, exc: Exception, action: str, path: str) -> Exception:
    """Translate an SFTP-level exception into the session error taxonomy."""
    if isinstance(exc, FileNotFoundError) or getattr(exc, "errno", None) == errno.ENOENT:
        return RemoteObjectNotFound(path)
    if isinstance(exc, (EOFError, paramiko.SSHException)) or not entry.is_alive():
        # Subchannel is gone; the next operation reopens it.
        entry.reset_sftp()
    if isinstance(exc, PermissionError):
        return RemoteOperationFailed(f"SFTP {action} failed for {path}: permission denied")
    return RemoteOperationFailed(f"SFTP {action} failed for {path}: {exc}")


def _sftp(registry, session_id: str):
    entry = registry.get(session_id)
    try:
        return entry, entry.open_sftp()
    except Exception as exc:
        raise RemoteOperationFailed(f"SFTP session failed: {exc}")


def list_dir(registry, session_id: str, path: str) -> List[Dict[str, Any]]:
    entry, sftp = _sftp(registry, session_id)
    try:
        attrs = sftp.listdir_attr(path)
    except Exception as exc:
        raise _remote_error(entry, exc, "readdir", path)

    rows = []
    for item in attrs:
        rows.append({
            "name": item.filename,
            "type": file_type(item.st_mode),
            "size": item.st_size,
            "modify_time": iso_timestamp(item.st_mtime),
            "access_time": iso_timestamp(item.st_atime),
            "owner": item.st_uid,
            "group": item.st_gid,
            "permissions": format_permissions(item.st_mode),
        })
    rows.sort(key=lambda row: (row["type"] != "directory", row["name"]))
    return rows


def read_file(
    registry,
    session_id: str,
    path: str,
    encoding: Optional[str] = None,
    max_size: Optional[int] = None,
) -> Dict[str, Any]:
    encoding = _normalize_encoding(encoding)
    limit = registry.settings.MAX_FILE_SIZE if max_size is None else int(max_size)
    entry, sftp = _sftp(registry, session_id)

    try:
        size = sftp.stat(path).st_size or 0
    except Exception as exc:
        raise _remote_error(entry, exc, "stat", path)
    if size > limit:
        raise TransferSizeExceeded(path, size, limit)

    try:
        with sftp.open(path, "rb") as handle:
            handle.prefetch(size)
            payload = handle.read()
    except Exception as exc:
        raise _remote_error(entry, exc, "read", path)

    if encoding == "base64":
        content = base64.b64encode(payload).decode("ascii")
    else:
        content = payload.decode("utf-8", errors="replace")
    return {"content": content, "encoding": encoding, "size": len(payload)}


def write_file(
    registry,
    session_id: str,
    path: str,
    content: str,
    encoding: Optional[str] = None,
    mode: Optional[int] = None,
) -> Dict[str, Any]:
    encoding = _normalize_encoding(encoding)
    if encoding == "base64":
        try:
            payload = base64.b64decode(content or "", validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidArgument(f"content is not valid base64: {exc}")
    else:
        payload = (content or "").encode("utf-8")

    entry, sftp = _sftp(registry, session_id)
    try:
        with sftp.open(path, "wb") as handle:
            handle.write(payload)
        if mode is not None:
            sftp.chmod(path, mode)
    except Exception as exc:
        raise _remote_error(entry, exc, "write", path)
    return {"path": path, "size": len(payload)}


def _path_prefixes(path: str) -> List[str]:
    parts = [part for part in path.split("/") if part]
    current = "/" if path.startswith("/") else ""
    prefixes = []
    for part in parts:
        current = posixpath.join(current, part) if current else part
        prefixes.append(current)
    return prefixes


def make_dir(registry, session_id: str, path: str, recursive: bool = False) -> Dict[str, Any]:
    entry, sftp = _sftp(registry, session_id)
    if not recursive:
        try:
            sftp.mkdir(path)
        except Exception as exc:
            raise _remote_error(entry, exc, "mkdir", path)
        return {"path": path, "created": True, "recursive": False}

    for prefix in _path_prefixes(path):
        try:
            sftp.mkdir(prefix)
            continue
        except Exception as exc:
            failure = exc
        # Servers report "already exists" as a generic failure; verify explicitly.
        try:
            attrs = sftp.stat(prefix)
        except Exception:
            raise _remote_error(entry, failure, "mkdir", prefix)
        if not stat_mod.S_ISDIR(attrs.st_mode or 0):
            raise NotADirectory(prefix)
    return {"path": path, "created": True, "recursive": True}


def _remove_tree(entry, sftp, path: str, depth: int) -> None:
    if depth > MAX_REMOVE_DEPTH:
        raise RemoteOperationFailed(f"refusing to remove {path}: nesting deeper than {MAX_REMOVE_DEPTH} levels")
    try:
        children = sftp.listdir_attr(path)
    except Exception as exc:
        raise _remote_error(entry, exc, "readdir", path)

    for child in children:
        if child.filename in (".", ".."):
            continue
        child_path = posixpath.join(path, child.filename)
        if stat_mod.S_ISDIR(child.st_mode or 0):
            _remove_tree(entry, sftp, child_path, depth + 1)
        else:
            try:
                sftp.remove(child_path)
            except Exception as exc:
                raise _remote_error(entry, exc, "unlink", child_path)

    try:
        sftp.rmdir(path)
    except Exception as exc:
        raise _remote_error(entry, exc, "rmdir", path)


def remove(registry, session_id: str, path: str, recursive: bool = False) -> Dict[str, Any]:
    entry, sftp = _sftp(registry, session_id)
    try:
        attrs = sftp.lstat(path)
    except Exception as exc:
        raise _remote_error(entry, exc, "stat", path)

    if stat_mod.S_ISDIR(attrs.st_mode or 0):
        if not recursive:
            try:
                has_children = bool(sftp.listdir(path))
            except Exception as exc:
                raise _remote_error(entry, exc, "readdir", path)
            if has_children:
                raise DirectoryNotEmpty(path)
            raise IsADirectory(path)
        _remove_tree(entry, sftp, path, depth=0)
    else:
        try:
            sftp.remove(path)
        except Exception as exc:
            raise _remote_error(entry, exc, "unlink", path)
    log_error(f"removed {path} on session {session_id} (recursive={recursive})")
    return {"path": path, "removed": True}


def rename(registry, session_id: str, source: str, destination: str) -> Dict[str, Any]:
    entry, sftp = _sftp(registry, session_id)
    try:
        sftp.rename(source, destination)
    except Exception as exc:
        raise _remote_error(entry, exc, "rename", source)
    return {"source": source, "destination": destination, "moved": True}


def stat(registry, session_id: str, path: str) -> Dict[str, Any]:
    entry, sftp = _sftp(registry, session_id)
    try:
        attrs = sftp.lstat(path)
    except Exception as exc:
        raise _remote_error(entry, exc, "stat", path)

    is_symlink = stat_mod.S_ISLNK(attrs.st_mode or 0)
    if is_symlink:
        # Report the target's metadata; a dangling link keeps its own.
        try:
            attrs = sftp.stat(path)
        except Exception as exc:
            log_error(f"stat of link target {path} failed: {exc}")

    mode = attrs.st_mode or 0
    return {
        "path": path,
        "size": attrs.st_size,
        "permissions": format_permissions(mode),
        "owner": attrs.st_uid,
        "group": attrs.st_gid,
        "modify_time": iso_timestamp(attrs.st_mtime),
        "access_time": iso_timestamp(attrs.st_atime),
        "is_directory": stat_mod.S_ISDIR(mode),
        "is_file": stat_mod.S_ISREG(mode),
        "is_symlink": is_symlink,
    }
