"""
Account records persisted under a wallet's storage root.

- DirectKeystore: one encrypted private key (direct/<pubkey>.json)
- DerivedAccount: index metadata for a derived key (no secrets)
- DerivedIndex: derived/accounts.json (next index + accounts)
- DerivedSeed: derived/seed.json (encrypted mnemonic)
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional

from wallet.crypto import EncryptedBlob
from wallet.derivation import DEFAULT_DERIVATION_PATH
from wallet.errors import CorruptData, CryptoError
from wallet.keys import normalize_public_key, public_key_hex


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_public_key(value) -> bytes:
    try:
        return normalize_public_key(value)
    except (TypeError, ValueError) as e:
        raise CorruptData(f"Invalid stored public key: {e}") from e


@dataclass
class DirectKeystore:
    """Encrypted private key for one Direct account."""
    public_key: bytes
    address: str
    crypto: EncryptedBlob
    sequence: int = 0    # creation order within the wallet
    created_at: str = field(default_factory=_now)

    @property
    def filename(self) -> str:
        return f"{self.public_key.hex()}.json"

    def to_dict(self) -> dict:
        return {
            "public_key": public_key_hex(self.public_key),
            "address": self.address,
            "sequence": self.sequence,
            "created_at": self.created_at,
            "crypto": self.crypto.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DirectKeystore":
        if not isinstance(data, dict):
            raise CorruptData("Keystore must be an object")
        try:
            return cls(
                public_key=_parse_public_key(data["public_key"]),
                address=data["address"],
                crypto=EncryptedBlob.from_dict(data["crypto"]),
                sequence=int(data.get("sequence", 0)),
                created_at=data.get("created_at", "")
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptData(f"Malformed keystore: {e}") from e


@dataclass
class DerivedAccount:
    """Derivation metadata for one Derived account."""
    index: int
    path: str
    public_key: bytes
    address: str
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["public_key"] = public_key_hex(self.public_key)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "DerivedAccount":
        try:
            return cls(
                index=int(data["index"]),
                path=data["path"],
                public_key=_parse_public_key(data["public_key"]),
                address=data["address"],
                created_at=data.get("created_at", "")
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptData(f"Malformed derived account entry: {e}") from e


@dataclass
class DerivedIndex:
    """
    Contents of derived/accounts.json.

    next_index only moves forward: deleting an account never frees its
    index for reuse.
    """
    next_index: int = 0
    accounts: list[DerivedAccount] = field(default_factory=list)

    def find(self, public_key: bytes) -> Optional[DerivedAccount]:
        for account in self.accounts:
            if account.public_key == public_key:
                return account
        return None

    def add(self, account: DerivedAccount) -> None:
        self.accounts.append(account)
        self.accounts.sort(key=lambda a: a.index)
        self.next_index = max(self.next_index, account.index + 1)

    def copy(self) -> "DerivedIndex":
        return DerivedIndex(next_index=self.next_index, accounts=list(self.accounts))

    def remove(self, public_key: bytes) -> Optional[DerivedAccount]:
        account = self.find(public_key)
        if account is not None:
            self.accounts.remove(account)
        return account

    def to_dict(self) -> dict:
        return {
            "next_index": self.next_index,
            "accounts": [a.to_dict() for a in self.accounts],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DerivedIndex":
        if not isinstance(data, dict):
            raise CorruptData("Derived account index must be an object")
        try:
            accounts = [DerivedAccount.from_dict(a) for a in data.get("accounts", [])]
            index = cls(next_index=int(data.get("next_index", 0)), accounts=[])
        except (TypeError, ValueError) as e:
            raise CorruptData(f"Malformed derived account index: {e}") from e
        for account in accounts:
            if account.index >= index.next_index or index.find(account.public_key):
                raise CorruptData(f"Inconsistent derived account index at {account.index}")
            index.accounts.append(account)
        index.accounts.sort(key=lambda a: a.index)
        return index


@dataclass
class DerivedSeed:
    """Contents of derived/seed.json: the encrypted mnemonic and passphrase."""
    mnemonic: EncryptedBlob
    passphrase: Optional[EncryptedBlob] = None
    path_template: str = DEFAULT_DERIVATION_PATH

    def to_dict(self) -> dict:
        return {
            "mnemonic": self.mnemonic.to_dict(),
            "passphrase": self.passphrase.to_dict() if self.passphrase else None,
            "path_template": self.path_template,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DerivedSeed":
        if not isinstance(data, dict):
            raise CorruptData("Seed file must be an object")
        try:
            return cls(
                mnemonic=EncryptedBlob.from_dict(data["mnemonic"]),
                passphrase=EncryptedBlob.from_dict(data["passphrase"]) if data.get("passphrase") else None,
                path_template=data.get("path_template") or DEFAULT_DERIVATION_PATH
            )
        except (KeyError, TypeError, CryptoError) as e:
            raise CorruptData(f"Malformed seed file: {e}") from e
