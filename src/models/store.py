"""
Wallet Store - JSON persistence for one wallet storage root.

Layout:
    <root>/wallet.json              configuration (no secrets)
    <root>/.lock                    exclusive process lock
    <root>/direct/<pubkey>.json     Direct keystores
    <root>/derived/seed.json        Derived encrypted mnemonic
    <root>/derived/accounts.json    Derived index metadata

Every write goes through a temp file and an atomic replace, with
owner-only permissions on POSIX.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from utils import ensure_dir, read_json, set_secure_permissions, write_json_atomic
from wallet.errors import CorruptConfig, CorruptData, NotFound, WalletInUse, CryptoError
from wallet.keys import short_key

from .account import DerivedIndex, DerivedSeed, DirectKeystore
from .config import WalletDescriptor

if os.name == 'posix':
    import fcntl
else:
    import msvcrt

logger = logging.getLogger(__name__)

CONFIG_FILE = "wallet.json"
LOCK_FILE = ".lock"
DIRECT_DIR = "direct"
DERIVED_DIR = "derived"
SEED_FILE = "seed.json"
ACCOUNTS_FILE = "accounts.json"


class WalletStore:
    """Reads and writes the files under a wallet's storage root."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.config_path = self.root / CONFIG_FILE
        self.lock_path = self.root / LOCK_FILE
        self.direct_dir = self.root / DIRECT_DIR
        self.derived_dir = self.root / DERIVED_DIR
        self.seed_path = self.derived_dir / SEED_FILE
        self.accounts_path = self.derived_dir / ACCOUNTS_FILE
        self._lock_file = None

    def exists(self) -> bool:
        return self.config_path.exists()

    # ============================================
    # Process lock
    # ============================================

    @property
    def is_locked(self) -> bool:
        return self._lock_file is not None

    def acquire_lock(self) -> None:
        """
        Take the exclusive lock on the storage root.

        Raises:
            WalletInUse: If another process (or another open wallet) holds it
        """
        if self._lock_file is not None:
            return
        ensure_dir(self.root)
        lock_file = open(self.lock_path, "a+b")
        try:
            if os.name == 'posix':
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            else:
                lock_file.seek(0)
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            lock_file.close()
            raise WalletInUse("Storage root is locked by another wallet process",
                              operation="lock", wallet_path=self.root) from None
        set_secure_permissions(self.lock_path)
        self._lock_file = lock_file
        logger.debug(f"Acquired storage lock on {self.root}")

    def release_lock(self) -> None:
        lock_file, self._lock_file = self._lock_file, None
        if lock_file is None:
            return
        try:
            if os.name == 'posix':
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            else:
                lock_file.seek(0)
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
        finally:
            lock_file.close()
        logger.debug(f"Released storage lock on {self.root}")

    # ============================================
    # wallet.json
    # ============================================

    def read_descriptor(self) -> WalletDescriptor:
        """
        Load wallet.json.

        Raises:
            NotFound: No wallet at this root
            CorruptConfig: Unreadable, unknown version or kind, inconsistent
        """
        if not self.config_path.exists():
            raise NotFound("No wallet found", operation="open", wallet_path=self.root)
        try:
            data = read_json(self.config_path)
        except (OSError, ValueError) as e:
            raise CorruptConfig(f"Cannot read {CONFIG_FILE}: {e}", operation="open",
                                wallet_path=self.root) from e
        try:
            return WalletDescriptor.from_dict(data)
        except CorruptConfig as e:
            raise CorruptConfig(e.message, operation="open", wallet_path=self.root) from e

    def write_descriptor(self, descriptor: WalletDescriptor) -> None:
        ensure_dir(self.root)
        write_json_atomic(self.config_path, descriptor.to_dict())

    # ============================================
    # Direct keystores
    # ============================================

    def keystore_path(self, public_key: bytes) -> Path:
        return self.direct_dir / f"{public_key.hex()}.json"

    def _load_keystore(self, path: Path) -> DirectKeystore:
        try:
            keystore = DirectKeystore.from_dict(read_json(path))
        except (OSError, ValueError) as e:
            raise CorruptData(f"Cannot read keystore {path.name}: {e}",
                              wallet_path=self.root) from e
        except CryptoError as e:
            raise CorruptData(e.message, wallet_path=self.root, account=path.stem) from e
        if path.name != keystore.filename:
            raise CorruptData(f"Keystore {path.name} holds a different public key",
                              wallet_path=self.root, account=short_key(keystore.public_key))
        return keystore

    def list_keystores(self) -> list[DirectKeystore]:
        """All Direct keystores in creation order."""
        if not self.direct_dir.exists():
            return []
        keystores = [self._load_keystore(p) for p in self.direct_dir.glob("*.json")]
        keystores.sort(key=lambda k: (k.sequence, k.created_at))
        return keystores

    def read_keystore(self, public_key: bytes) -> Optional[DirectKeystore]:
        path = self.keystore_path(public_key)
        if not path.exists():
            return None
        return self._load_keystore(path)

    def write_keystore(self, keystore: DirectKeystore) -> None:
        ensure_dir(self.direct_dir)
        write_json_atomic(self.direct_dir / keystore.filename, keystore.to_dict())

    def delete_keystore(self, public_key: bytes) -> bool:
        path = self.keystore_path(public_key)
        if not path.exists():
            return False
        path.unlink()
        return True

    # ============================================
    # Derived seed and index
    # ============================================

    def read_seed(self) -> DerivedSeed:
        try:
            return DerivedSeed.from_dict(read_json(self.seed_path))
        except FileNotFoundError:
            raise CorruptConfig(f"Derived wallet is missing {DERIVED_DIR}/{SEED_FILE}",
                                wallet_path=self.root) from None
        except (OSError, ValueError) as e:
            raise CorruptData(f"Cannot read {SEED_FILE}: {e}", wallet_path=self.root) from e

    def write_seed(self, seed: DerivedSeed) -> None:
        ensure_dir(self.derived_dir)
        write_json_atomic(self.seed_path, seed.to_dict())

    def read_index(self) -> DerivedIndex:
        if not self.accounts_path.exists():
            return DerivedIndex()
        try:
            return DerivedIndex.from_dict(read_json(self.accounts_path))
        except (OSError, ValueError) as e:
            raise CorruptData(f"Cannot read {ACCOUNTS_FILE}: {e}", wallet_path=self.root) from e

    def write_index(self, index: DerivedIndex) -> None:
        ensure_dir(self.derived_dir)
        write_json_atomic(self.accounts_path, index.to_dict())

    def discard_uninitialized(self) -> None:
        """
        Remove key material from a root that has no wallet.json.

        Used when a create fails after writing the seed or keystore
        directory; a root with a configuration is never touched.
        """
        if self.exists():
            return
        for path in (self.seed_path, self.accounts_path):
            path.unlink(missing_ok=True)
            path.with_suffix(path.suffix + ".tmp").unlink(missing_ok=True)
        for directory in (self.derived_dir, self.direct_dir):
            if directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()
        logger.debug(f"Discarded partial wallet files under {self.root}")
