"""
Validator signing keys (secp256k1).

Public keys are the 64-byte uncompressed point, which is the stable
account identifier across every keymanager kind. Signatures are the
65-byte r || s || v form over a 32-byte signing root.
"""

import secrets

from eth_keys import keys
from eth_keys.constants import SECPK1_N
from eth_keys.exceptions import BadSignature, ValidationError

from .crypto import SecretBuffer


PRIVATE_KEY_SIZE = 32
PUBLIC_KEY_SIZE = 64
SIGNATURE_SIZE = 65
SIGNING_ROOT_SIZE = 32


def normalize_public_key(public_key: bytes | str) -> bytes:
    """Accept raw bytes or 0x-prefixed hex; return raw bytes."""
    if isinstance(public_key, str):
        text = public_key.strip()
        if text.startswith("0x") or text.startswith("0X"):
            text = text[2:]
        try:
            public_key = bytes.fromhex(text)
        except ValueError:
            raise ValueError(f"Public key is not valid hex: {public_key!r}") from None
    public_key = bytes(public_key)
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise ValueError(f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(public_key)}")
    return public_key


def check_signing_root(signing_root: bytes) -> bytes:
    signing_root = bytes(signing_root)
    if len(signing_root) != SIGNING_ROOT_SIZE:
        raise ValueError(f"Signing root must be {SIGNING_ROOT_SIZE} bytes, got {len(signing_root)}")
    return signing_root


def public_key_hex(public_key: bytes) -> str:
    return "0x" + public_key.hex()


def short_key(public_key: bytes) -> str:
    """Shortened form for log lines: 0x1234abcd…"""
    return f"0x{public_key[:4].hex()}…"


def _private_key(secret: SecretBuffer) -> keys.PrivateKey:
    raw = secret.reveal()
    if len(raw) != PRIVATE_KEY_SIZE or not 0 < int.from_bytes(raw, "big") < SECPK1_N:
        raise ValueError("Private key is outside the secp256k1 range")
    return keys.PrivateKey(raw)


def generate_private_key() -> SecretBuffer:
    """Fresh random secp256k1 private key."""
    while True:
        candidate = SecretBuffer(secrets.token_bytes(PRIVATE_KEY_SIZE))
        try:
            _private_key(candidate)
        except ValueError:
            # Outside the curve order; astronomically rare
            candidate.erase()
            continue
        return candidate


def public_key_of(secret: SecretBuffer) -> bytes:
    try:
        return _private_key(secret).public_key.to_bytes()
    except (ValueError, ValidationError) as e:
        raise ValueError(f"Invalid private key: {e}") from None


def address_of(public_key: bytes) -> str:
    """Checksum address for display next to the public key."""
    return keys.PublicKey(public_key).to_checksum_address()


def sign_root(secret: SecretBuffer, signing_root: bytes) -> bytes:
    """Sign a 32-byte signing root. Returns 65-byte r || s || v."""
    signing_root = check_signing_root(signing_root)
    return _private_key(secret).sign_msg_hash(signing_root).to_bytes()


def verify_signature(public_key: bytes, signing_root: bytes, signature: bytes) -> bool:
    """Check a signature over a signing root against a public key."""
    try:
        sig = keys.Signature(signature_bytes=bytes(signature))
        return keys.PublicKey(bytes(public_key)).verify_msg_hash(bytes(signing_root), sig)
    except (BadSignature, ValidationError, ValueError):
        return False
