"""
Wallet Configuration - Explicit configuration passed into wallets.

Contains:
- KeymanagerKind: direct / derived / remote
- RemoteIdentity: address and TLS material for a remote signer
- WalletConfig: everything needed to create or open a wallet
- WalletDescriptor: the persisted wallet.json
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from wallet.crypto import KDF_ARGON2ID, KDF_ALGORITHMS, EncryptedBlob, KdfParams
from wallet.errors import ConfigError, CorruptConfig, CryptoError


WALLET_VERSION = 1
DEFAULT_REMOTE_TIMEOUT = 5.0
DEFAULT_SIGN_LOCK_TIMEOUT = 30.0


class KeymanagerKind(str, Enum):
    DIRECT = "direct"
    DERIVED = "derived"
    REMOTE = "remote"

    @classmethod
    def parse(cls, value: "str | KeymanagerKind") -> "KeymanagerKind":
        try:
            return cls(value)
        except ValueError:
            choices = ", ".join(k.value for k in cls)
            raise ConfigError(f"Unknown keymanager kind '{value}' (expected one of: {choices})") from None

    @property
    def uses_password(self) -> bool:
        return self is not KeymanagerKind.REMOTE


@dataclass
class RemoteIdentity:
    """Where the remote signer lives and how to authenticate to it."""
    address: str         # host:port
    cert_path: str       # client certificate (PEM)
    key_path: str        # client private key (PEM)
    ca_cert_path: str    # CA that signed the server certificate
    timeout: float = DEFAULT_REMOTE_TIMEOUT

    def __post_init__(self):
        self.host, self.port = self.split_address(self.address)
        if self.timeout <= 0:
            raise ConfigError(f"Remote timeout must be positive, got {self.timeout}")

    @staticmethod
    def split_address(address: str) -> tuple[str, int]:
        """Split 'host:port' into its parts."""
        host, sep, port = str(address).rpartition(":")
        if not sep or not host:
            raise ConfigError(f"Remote address must be host:port, got '{address}'")
        try:
            port_num = int(port)
        except ValueError:
            raise ConfigError(f"Remote port is not a number: '{port}'") from None
        if not 0 < port_num < 65536:
            raise ConfigError(f"Remote port out of range: {port_num}")
        return host.strip("[]"), port_num

    def missing_files(self) -> list[str]:
        """Paths of TLS files that do not exist."""
        return [p for p in (self.cert_path, self.key_path, self.ca_cert_path) if not Path(p).is_file()]

    def replace(self, address: Optional[str] = None, cert_path: Optional[str] = None,
                key_path: Optional[str] = None, ca_cert_path: Optional[str] = None,
                timeout: Optional[float] = None) -> "RemoteIdentity":
        """Copy with the given fields changed."""
        return RemoteIdentity(
            address=address or self.address,
            cert_path=cert_path or self.cert_path,
            key_path=key_path or self.key_path,
            ca_cert_path=ca_cert_path or self.ca_cert_path,
            timeout=timeout if timeout is not None else self.timeout
        )

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "cert_path": str(self.cert_path),
            "key_path": str(self.key_path),
            "ca_cert_path": str(self.ca_cert_path),
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RemoteIdentity":
        try:
            return cls(
                address=data["address"],
                cert_path=data["cert_path"],
                key_path=data["key_path"],
                ca_cert_path=data["ca_cert_path"],
                timeout=float(data.get("timeout", DEFAULT_REMOTE_TIMEOUT))
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptConfig(f"Invalid remote identity: {e}") from e


@dataclass
class WalletConfig:
    """
    Configuration for creating or opening a wallet.

    Nothing is read from global paths; the storage root and every
    tunable are passed in here.
    """
    storage_dir: Path
    kind: KeymanagerKind = KeymanagerKind.DIRECT
    kdf_algorithm: str = KDF_ARGON2ID
    kdf_costs: dict = field(default_factory=dict)
    remote: Optional[RemoteIdentity] = None
    sign_lock_timeout: float = DEFAULT_SIGN_LOCK_TIMEOUT
    label: str = ""

    def __post_init__(self):
        self.storage_dir = Path(self.storage_dir)
        self.kind = KeymanagerKind.parse(self.kind)
        if self.kdf_algorithm not in KDF_ALGORITHMS:
            raise ConfigError(f"Unsupported KDF algorithm: {self.kdf_algorithm}")

    def new_kdf_params(self) -> KdfParams:
        """Fresh KDF parameters (new salt) for a new wallet."""
        try:
            return KdfParams.generate(self.kdf_algorithm, **self.kdf_costs)
        except ValueError as e:
            raise ConfigError(str(e)) from e


@dataclass
class WalletDescriptor:
    """Contents of <root>/wallet.json. Holds no secrets."""
    kind: KeymanagerKind
    created_at: str
    label: str = ""
    kdf: Optional[KdfParams] = None
    checksum: Optional[EncryptedBlob] = None
    remote: Optional[RemoteIdentity] = None
    version: int = WALLET_VERSION

    @classmethod
    def new(cls, kind: KeymanagerKind, label: str = "", kdf: Optional[KdfParams] = None,
            remote: Optional[RemoteIdentity] = None) -> "WalletDescriptor":
        return cls(
            kind=kind,
            created_at=datetime.now(timezone.utc).isoformat(),
            label=label,
            kdf=kdf,
            remote=remote
        )

    def checksum_payload(self) -> bytes:
        """
        Canonical bytes sealed into the configuration checksum.

        Covers the fields that must not change behind the wallet's back:
        kind, creation time and KDF salt.
        """
        salt = self.kdf.salt.hex() if self.kdf else ""
        return f"v{self.version}|{self.kind.value}|{self.created_at}|{salt}".encode("utf-8")

    def validate(self) -> None:
        """Check internal consistency. Raises CorruptConfig."""
        if self.version != WALLET_VERSION:
            raise CorruptConfig(f"Unsupported wallet version: {self.version}")
        if self.kind.uses_password:
            if self.kdf is None or self.checksum is None:
                raise CorruptConfig(f"{self.kind.value} wallet is missing its KDF or checksum")
            if self.remote is not None:
                raise CorruptConfig(f"{self.kind.value} wallet must not carry a remote identity")
        else:
            if self.remote is None:
                raise CorruptConfig("Remote wallet is missing its remote identity")

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "kind": self.kind.value,
            "created_at": self.created_at,
            "label": self.label,
            "kdf": self.kdf.to_dict() if self.kdf else None,
            "checksum": self.checksum.to_dict() if self.checksum else None,
            "remote": self.remote.to_dict() if self.remote else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WalletDescriptor":
        if not isinstance(data, dict):
            raise CorruptConfig("wallet.json must contain an object")
        try:
            kind = KeymanagerKind(data["kind"])
            descriptor = cls(
                kind=kind,
                created_at=str(data["created_at"]),
                label=data.get("label") or "",
                kdf=KdfParams.from_dict(data["kdf"]) if data.get("kdf") else None,
                checksum=EncryptedBlob.from_dict(data["checksum"]) if data.get("checksum") else None,
                remote=RemoteIdentity.from_dict(data["remote"]) if data.get("remote") else None,
                version=int(data.get("version", 0))
            )
        except (KeyError, TypeError, ValueError, CryptoError, ConfigError) as e:
            raise CorruptConfig(f"Invalid wallet configuration: {e}") from e
        descriptor.validate()
        return descriptor
