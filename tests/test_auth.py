import paramiko
import pytest

from ssh_mcp.auth import load_private_key, resolve_credentials, resolve_username
from ssh_mcp.errors import AuthenticationUnavailable
from ssh_mcp.keygen import generate_keypair


@pytest.fixture(scope="module")
def ed25519_pem():
    return generate_keypair("ed25519")["private_key"]


def _write(path, text):
    path.write_text(text)
    return str(path)


def test_resolve_username():
    assert resolve_username("alice", "ops") == "alice"
    assert resolve_username(None, "ops") == "ops"
    assert resolve_username(None, None) == "root"


def test_inline_key_wins(ed25519_pem, tmp_path):
    creds = resolve_credentials(
        private_key=ed25519_pem,
        private_key_path=str(tmp_path / "other"),
        password="pw",
    )
    assert creds.method == "private_key"
    assert isinstance(creds.pkey, paramiko.Ed25519Key)
    assert creds.connect_kwargs() == {"pkey": creds.pkey}


def test_key_path_beats_password(ed25519_pem, tmp_path):
    key_path = _write(tmp_path / "id_test", ed25519_pem)
    creds = resolve_credentials(private_key_path=key_path, password="pw")
    assert creds.method == "private_key_path"
    assert creds.source == key_path


def test_unreadable_key_path(tmp_path):
    with pytest.raises(AuthenticationUnavailable, match="Cannot read"):
        resolve_credentials(private_key_path=str(tmp_path / "nope"))


def test_probe_skips_missing_candidates(ed25519_pem, tmp_path):
    second = _write(tmp_path / "id_rsa", ed25519_pem)
    creds = resolve_credentials(candidates=[str(tmp_path / "id_ed25519"), second])
    assert creds.method == "default_key"
    assert creds.source == second


def test_configured_default_key_replaces_candidates(ed25519_pem, tmp_path):
    candidate = _write(tmp_path / "id_ed25519", ed25519_pem)
    with pytest.raises(AuthenticationUnavailable, match="No authentication method"):
        resolve_credentials(default_key_path=str(tmp_path / "missing"), candidates=[candidate])


def test_password_when_nothing_else(tmp_path):
    creds = resolve_credentials(password="pw", candidates=[str(tmp_path / "id_ed25519")])
    assert creds.method == "password"
    assert creds.connect_kwargs() == {"password": "pw"}


def test_password_skips_default_key_probe(ed25519_pem, tmp_path):
    candidate = _write(tmp_path / "id_ed25519", ed25519_pem)
    creds = resolve_credentials(password="pw", candidates=[candidate])
    assert creds.method == "password"


def test_encrypted_key_needs_passphrase():
    pem = generate_keypair("ed25519", passphrase="s3cret")["private_key"]

    with pytest.raises(AuthenticationUnavailable, match="encrypted"):
        load_private_key(pem)
    assert isinstance(load_private_key(pem, passphrase="s3cret"), paramiko.Ed25519Key)


def test_garbage_key_text():
    with pytest.raises(AuthenticationUnavailable, match="Cannot parse"):
        load_private_key("not a key")
