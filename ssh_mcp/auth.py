import io
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import paramiko

from ssh_mcp.config import DEFAULT_KEY_CANDIDATES, DEFAULT_USERNAME
from ssh_mcp.errors import AuthenticationUnavailable

# Loaders tried in order when parsing key text of unknown type.
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


@dataclass
class Credentials:
    method: str
    pkey: Optional[paramiko.PKey] = None
    password: Optional[str] = None
    source: str = ""

    def connect_kwargs(self) -> Dict[str, Any]:
        if self.pkey is not None:
            return {"pkey": self.pkey}
        return {"password": self.password}

    def describe(self) -> str:
        return f"{self.method} ({self.source})" if self.source else self.method


def resolve_username(username: Optional[str], default_username: Optional[str]) -> str:
    return username or default_username or DEFAULT_USERNAME


def load_private_key(key_text: str, passphrase: Optional[str] = None, source: str = "inline key") -> paramiko.PKey:
    errors = []
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(key_text), password=passphrase)
        except paramiko.PasswordRequiredException:
            raise AuthenticationUnavailable(f"Private key from {source} is encrypted; provide a passphrase")
        except Exception as exc:
            errors.append(f"{key_class.__name__}: {exc}")
    raise AuthenticationUnavailable(f"Cannot parse private key from {source}: {'; '.join(errors)}")


def _read_key_file(path: str) -> str:
    with open(os.path.expanduser(path), "r", encoding="utf-8") as handle:
        return handle.read()


def resolve_credentials(
    private_key: Optional[str] = None,
    private_key_path: Optional[str] = None,
    passphrase: Optional[str] = None,
    password: Optional[str] = None,
    default_key_path: Optional[str] = None,
    candidates: Sequence[str] = DEFAULT_KEY_CANDIDATES,
) -> Credentials:
    """Pick exactly one credential: inline key, key path, probed default key, password."""
    if private_key:
        return Credentials(
            method="private_key",
            pkey=load_private_key(private_key, passphrase),
            source="inline",
        )

    if private_key_path:
        try:
            key_text = _read_key_file(private_key_path)
        except OSError as exc:
            raise AuthenticationUnavailable(f"Cannot read private key {private_key_path}: {exc}")
        return Credentials(
            method="private_key_path",
            pkey=load_private_key(key_text, passphrase, source=private_key_path),
            source=private_key_path,
        )

    if not password:
        probe = [default_key_path] if default_key_path else list(candidates)
        for candidate in probe:
            try:
                key_text = _read_key_file(candidate)
            except OSError:
                continue
            return Credentials(
                method="default_key",
                pkey=load_private_key(key_text, passphrase, source=candidate),
                source=candidate,
            )
        raise AuthenticationUnavailable(
            "No authentication method available. Provide password, private_key, or private_key_path. "
            f"No default SSH key found at {', '.join(probe)}."
        )

    return Credentials(method="password", password=password)
