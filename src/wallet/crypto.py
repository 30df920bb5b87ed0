"""
Wallet Crypto - Secret store for key material at rest.

Industry-standard security:
- Argon2id key derivation (memory-hard), scrypt as an alternative
- AES-256-GCM authenticated encryption
- Separate password verifier so a wrong password is told apart
  from tampered ciphertext

Nothing in this module touches the disk. Decrypted material is handed
out in SecretBuffer objects that zero themselves when the scope ends.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass, field
from typing import Optional

from argon2.low_level import hash_secret_raw, Type
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import CorruptData, WrongPassword


# ============================================
# Security Constants
# ============================================

# Argon2id parameters (OWASP recommendations for high-security)
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 4

# scrypt parameters (same as the standard Ethereum keystore)
SCRYPT_N = 1 << 18
SCRYPT_R = 8
SCRYPT_P = 1

KDF_ARGON2ID = "argon2id"
KDF_SCRYPT = "scrypt"
KDF_ALGORITHMS = (KDF_ARGON2ID, KDF_SCRYPT)

SALT_SIZE = 16
DERIVED_KEY_SIZE = 64  # 32 bytes AES key + 32 bytes verifier material

# AES-GCM constants
AES_KEY_SIZE = 32
AES_IV_SIZE = 12  # 96 bits (recommended for GCM)
AES_TAG_SIZE = 16
CIPHER_NAME = "aes-256-gcm"

DEFAULT_COSTS = {
    KDF_ARGON2ID: {
        "time_cost": ARGON2_TIME_COST,
        "memory_cost": ARGON2_MEMORY_COST,
        "parallelism": ARGON2_PARALLELISM,
    },
    KDF_SCRYPT: {
        "n": SCRYPT_N,
        "r": SCRYPT_R,
        "p": SCRYPT_P,
    },
}


# ============================================
# Secure Memory
# ============================================

def secure_erase(buffer: bytearray | memoryview) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    buffer[:] = bytes(len(buffer))


class SecretBuffer:
    """
    Mutable holder for decrypted secret bytes.

    Use as a context manager; the contents are zeroed when the block
    exits, whether it returns or raises.

    Usage:
        with decrypt(blob, password) as secret:
            signature = sign_root(secret, root)
    """

    __slots__ = ("_data",)

    def __init__(self, data: bytes | bytearray):
        self._data = bytearray(data)
        if isinstance(data, bytearray):
            secure_erase(data)

    @property
    def value(self) -> bytearray:
        """The live buffer. Do not keep references past the scope."""
        return self._data

    def reveal(self) -> bytes:
        """Immutable copy, for APIs that refuse a bytearray."""
        return bytes(self._data)

    @property
    def erased(self) -> bool:
        return not any(self._data)

    def erase(self) -> None:
        secure_erase(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.erase()

    def __repr__(self) -> str:
        return f"SecretBuffer(<{len(self._data)} bytes>)"

    def __del__(self):
        """Attempt to clear sensitive data on destruction."""
        data = getattr(self, "_data", None)
        if data is not None:
            secure_erase(data)


# ============================================
# Key Derivation
# ============================================

@dataclass
class KdfParams:
    """KDF algorithm, salt and cost parameters stored next to ciphertext."""
    algorithm: str
    salt: bytes
    costs: dict = field(default_factory=dict)

    @classmethod
    def generate(cls, algorithm: str = KDF_ARGON2ID, **costs) -> "KdfParams":
        """New parameters with a fresh random salt."""
        if algorithm not in KDF_ALGORITHMS:
            raise ValueError(f"Unsupported KDF algorithm: {algorithm}")
        merged = dict(DEFAULT_COSTS[algorithm])
        unknown = set(costs) - set(merged)
        if unknown:
            raise ValueError(f"Unknown {algorithm} cost parameters: {sorted(unknown)}")
        merged.update(costs)
        return cls(algorithm=algorithm, salt=secrets.token_bytes(SALT_SIZE), costs=merged)

    def derive(self, password: str) -> SecretBuffer:
        """
        Run the KDF over the password.

        With the default parameters each guess costs about a second and
        64 MB (argon2id) or 256 MB (scrypt) of RAM on commodity hardware.
        """
        secret = password.encode("utf-8")
        if self.algorithm == KDF_ARGON2ID:
            raw = hash_secret_raw(
                secret=secret,
                salt=self.salt,
                time_cost=self.costs["time_cost"],
                memory_cost=self.costs["memory_cost"],
                parallelism=self.costs["parallelism"],
                hash_len=DERIVED_KEY_SIZE,
                type=Type.ID
            )
        elif self.algorithm == KDF_SCRYPT:
            kdf = Scrypt(
                salt=self.salt,
                length=DERIVED_KEY_SIZE,
                n=self.costs["n"],
                r=self.costs["r"],
                p=self.costs["p"]
            )
            raw = kdf.derive(secret)
        else:
            raise CorruptData(f"Unsupported KDF algorithm: {self.algorithm}")
        return SecretBuffer(raw)

    def to_dict(self) -> dict:
        return {"algorithm": self.algorithm, "salt": self.salt.hex(), **self.costs}

    @classmethod
    def from_dict(cls, data: dict) -> "KdfParams":
        try:
            algorithm = data["algorithm"]
            salt = bytes.fromhex(data["salt"])
            expected = DEFAULT_COSTS[algorithm]
            costs = {name: int(data[name]) for name in expected}
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptData(f"Invalid KDF parameters: {e}") from e
        return cls(algorithm=algorithm, salt=salt, costs=costs)


# ============================================
# Encrypted Blob
# ============================================

@dataclass
class EncryptedBlob:
    """Self-describing ciphertext: KDF params, IV, ciphertext, tag, verifier."""
    kdf: KdfParams
    iv: bytes
    ciphertext: bytes
    tag: bytes
    checksum: bytes
    cipher: str = CIPHER_NAME

    def to_dict(self) -> dict:
        return {
            "kdf": self.kdf.to_dict(),
            "cipher": self.cipher,
            "iv": self.iv.hex(),
            "ciphertext": self.ciphertext.hex(),
            "tag": self.tag.hex(),
            "checksum": self.checksum.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedBlob":
        if not isinstance(data, dict):
            raise CorruptData("Encrypted blob must be an object")
        try:
            blob = cls(
                kdf=KdfParams.from_dict(data["kdf"]),
                iv=bytes.fromhex(data["iv"]),
                ciphertext=bytes.fromhex(data["ciphertext"]),
                tag=bytes.fromhex(data["tag"]),
                checksum=bytes.fromhex(data["checksum"]),
                cipher=data.get("cipher", CIPHER_NAME)
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptData(f"Malformed encrypted blob: {e}") from e
        if blob.cipher != CIPHER_NAME:
            raise CorruptData(f"Unsupported cipher: {blob.cipher}")
        if len(blob.iv) != AES_IV_SIZE or len(blob.tag) != AES_TAG_SIZE:
            raise CorruptData("Malformed encrypted blob: bad IV or tag length")
        return blob


class SessionKey:
    """
    Password-derived key held while a wallet is unlocked.

    Seals and unseals blobs without re-running the KDF. Call erase()
    (or leave the `with` block) to zero the key material.
    """

    def __init__(self, kdf: KdfParams, material: SecretBuffer):
        self.kdf = kdf
        self._material = material

    @classmethod
    def derive(cls, password: str, kdf: KdfParams) -> "SessionKey":
        return cls(kdf, kdf.derive(password))

    @property
    def erased(self) -> bool:
        return self._material.erased

    def _checksum(self) -> bytes:
        return hashlib.sha256(memoryview(self._material.value)[AES_KEY_SIZE:]).digest()

    def _cipher(self) -> AESGCM:
        return AESGCM(memoryview(self._material.value)[:AES_KEY_SIZE])

    def matches(self, blob: EncryptedBlob) -> bool:
        """True if this key was derived from the password that sealed the blob."""
        if blob.kdf.salt != self.kdf.salt or blob.kdf.algorithm != self.kdf.algorithm:
            return False
        return hmac.compare_digest(self._checksum(), blob.checksum)

    def seal(self, plaintext: bytes | bytearray) -> EncryptedBlob:
        if self.erased:
            raise ValueError("Session key has been erased")
        iv = secrets.token_bytes(AES_IV_SIZE)
        ciphertext_and_tag = self._cipher().encrypt(iv, bytes(plaintext), None)
        return EncryptedBlob(
            kdf=self.kdf,
            iv=iv,
            ciphertext=ciphertext_and_tag[:-AES_TAG_SIZE],
            tag=ciphertext_and_tag[-AES_TAG_SIZE:],
            checksum=self._checksum()
        )

    def unseal(self, blob: EncryptedBlob) -> SecretBuffer:
        """
        Decrypt a blob sealed under this key.

        Raises:
            WrongPassword: If the blob was sealed under a different password
            CorruptData: If the ciphertext fails authentication
        """
        if self.erased:
            raise ValueError("Session key has been erased")
        if not self.matches(blob):
            raise WrongPassword("Wrong password")
        try:
            plaintext = self._cipher().decrypt(blob.iv, blob.ciphertext + blob.tag, None)
        except InvalidTag as e:
            raise CorruptData("Ciphertext failed authentication") from e
        return SecretBuffer(plaintext)

    def erase(self) -> None:
        self._material.erase()

    def __enter__(self) -> "SessionKey":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.erase()


# ============================================
# Secret Store
# ============================================

def encrypt(plaintext: bytes | bytearray, password: str,
            kdf: Optional[KdfParams] = None) -> EncryptedBlob:
    """
    Encrypt bytes under a password.

    Args:
        plaintext: Secret bytes
        password: Password to derive the key from
        kdf: KDF parameters (default: fresh argon2id parameters)

    Returns:
        EncryptedBlob ready for to_dict()
    """
    with SessionKey.derive(password, kdf or KdfParams.generate()) as key:
        return key.seal(plaintext)


def decrypt(blob: EncryptedBlob, password: str) -> SecretBuffer:
    """
    Decrypt a blob with a password.

    Raises:
        WrongPassword: If the password is wrong
        CorruptData: If the blob is tampered with
    """
    with SessionKey.derive(password, blob.kdf) as key:
        return key.unseal(blob)
