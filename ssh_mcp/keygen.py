from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from ssh_mcp.errors import InvalidKeyParameters, UnsupportedKeyType

DEFAULT_KEY_TYPE = "ed25519"
DEFAULT_RSA_BITS = 4096
MIN_RSA_BITS = 2048
MAX_RSA_BITS = 16384
DEFAULT_ECDSA_BITS = 256
ECDSA_CURVES = {
    256: ec.SECP256R1,
    384: ec.SECP384R1,
    521: ec.SECP521R1,
}


def _private_key(key_type: str, bits: Optional[int]):
    if key_type == "ed25519":
        return ed25519.Ed25519PrivateKey.generate(), None

    if key_type == "rsa":
        bits = DEFAULT_RSA_BITS if bits is None else int(bits)
        if bits < MIN_RSA_BITS or bits > MAX_RSA_BITS:
            raise InvalidKeyParameters(f"RSA bits must be between {MIN_RSA_BITS} and {MAX_RSA_BITS}. Got: {bits}")
        return rsa.generate_private_key(public_exponent=65537, key_size=bits), bits

    if key_type == "ecdsa":
        bits = DEFAULT_ECDSA_BITS if bits is None else int(bits)
        curve = ECDSA_CURVES.get(bits)
        if curve is None:
            raise InvalidKeyParameters(f"ECDSA bits must be 256, 384, or 521. Got: {bits}")
        return ec.generate_private_key(curve()), bits

    raise UnsupportedKeyType(key_type)


def generate_keypair(
    key_type: Optional[str] = None,
    bits: Optional[int] = None,
    comment: Optional[str] = None,
    passphrase: Optional[str] = None,
) -> Dict[str, Any]:
    """Generate an SSH key pair in OpenSSH format. Nothing is written to disk.

    ``comment`` is appended to the public key line only; the OpenSSH private
    key serialization in ``cryptography`` has no comment field, so the private
    key carries an empty one.
    """
    key_type = (key_type or DEFAULT_KEY_TYPE).strip().lower()
    key, effective_bits = _private_key(key_type, bits)

    if passphrase:
        encryption = serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
    else:
        encryption = serialization.NoEncryption()

    private_key = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=encryption,
    ).decode("ascii")
    public_key = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("ascii")
    if comment:
        public_key = f"{public_key} {comment}"

    return {
        "public_key": public_key,
        "private_key": private_key,
        "type": key_type,
        "bits": effective_bits,
        "comment": comment,
    }
