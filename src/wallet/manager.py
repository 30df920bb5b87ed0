"""
Wallet Manager - Wallet lifecycle over one storage root.

State machine:
    UNINITIALIZED -> CREATED -> UNLOCKED -> (LOCKED | CLOSED)
    LOCKED -> UNLOCKED via unlock()

The wallet owns its storage root exclusively (OS file lock) and shares
one read/write lock with its keymanager: sign and list are readers;
unlock, lock, create, delete and edit_config are writers.
"""

import dataclasses
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from keymanager import KEYMANAGERS, AccountListing, DerivedKeymanager, ReadWriteLock, seal_checksum
from models.config import KeymanagerKind, RemoteIdentity, WalletConfig, WalletDescriptor
from models.store import WalletStore
from services.channel import build_client_context
from utils import ensure_dir

from .crypto import SessionKey
from .derivation import validate_mnemonic
from .errors import (
    AlreadyExists, ConfigError, CorruptConfig, Locked, UnsupportedForKind,
    UnsupportedOperation, WalletClosed
)

logger = logging.getLogger(__name__)


class WalletState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CREATED = "created"
    UNLOCKED = "unlocked"
    LOCKED = "locked"
    CLOSED = "closed"


class Wallet:
    """
    A validator wallet: configuration, storage root and one keymanager.

    Usage:
        with Wallet.open(WalletConfig(storage_dir=path)) as wallet:
            wallet.unlock(password)
            signature = wallet.sign(public_key, signing_root)
    """

    def __init__(self, config: WalletConfig, store: WalletStore, descriptor: WalletDescriptor,
                 state: WalletState = WalletState.UNINITIALIZED):
        self.config = config
        self._store = store
        self._descriptor = descriptor
        self._rwlock = ReadWriteLock()
        self._keymanager = KEYMANAGERS[descriptor.kind](
            store, descriptor, self._rwlock, config.sign_lock_timeout
        )
        self._state = state

    # ============================================
    # Construction
    # ============================================

    @classmethod
    def create(cls, config: WalletConfig, password: Optional[str] = None,
               mnemonic: Optional[str] = None, mnemonic_passphrase: str = "") -> "Wallet":
        """
        Create a new wallet at config.storage_dir.

        Args:
            config: Wallet configuration (kind, KDF, remote identity)
            password: Required for direct and derived wallets
            mnemonic: Required for derived wallets
            mnemonic_passphrase: Optional BIP-39 passphrase (derived only)

        Raises:
            AlreadyExists: Storage root already holds a wallet
            ConfigError: Missing password, mnemonic or remote identity
            UnsupportedForKind: Remote identity given for a non-remote wallet
            InvalidMnemonic: Mnemonic fails the wordlist or checksum
            WalletInUse: Another process holds the storage root
        """
        store = WalletStore(config.storage_dir)
        kind = config.kind
        if store.exists():
            raise AlreadyExists("Storage root already holds a wallet", operation="create",
                                wallet_path=store.root)
        if config.remote is not None and kind is not KeymanagerKind.REMOTE:
            raise UnsupportedForKind(f"Remote settings do not apply to a {kind.value} wallet",
                                     operation="create", wallet_path=store.root)
        if kind.uses_password and password is None:
            raise ConfigError(f"A password is required for a {kind.value} wallet",
                              operation="create", wallet_path=store.root)
        if kind is KeymanagerKind.DERIVED:
            if mnemonic is None:
                raise ConfigError("A mnemonic is required for a derived wallet",
                                  operation="create", wallet_path=store.root)
            mnemonic = validate_mnemonic(mnemonic)
        if kind is KeymanagerKind.REMOTE:
            if config.remote is None:
                raise ConfigError("A remote identity is required for a remote wallet",
                                  operation="create", wallet_path=store.root)
            build_client_context(config.remote)

        store.acquire_lock()
        try:
            if store.exists():
                raise AlreadyExists("Storage root already holds a wallet", operation="create",
                                    wallet_path=store.root)
            if kind.uses_password:
                descriptor = WalletDescriptor.new(kind, config.label, kdf=config.new_kdf_params())
                with SessionKey.derive(password, descriptor.kdf) as session:
                    seal_checksum(session, descriptor)
                    if kind is KeymanagerKind.DERIVED:
                        DerivedKeymanager.initialize(store, session, mnemonic, mnemonic_passphrase)
                    else:
                        ensure_dir(store.direct_dir)
            else:
                descriptor = WalletDescriptor.new(kind, config.label, remote=config.remote)
            # wallet.json last: a wallet exists only once its configuration does
            store.write_descriptor(descriptor)
        except BaseException:
            try:
                store.discard_uninitialized()
            finally:
                store.release_lock()
            raise

        logger.info(f"Created {kind.value} wallet at {store.root}")
        return cls(config, store, descriptor, WalletState.CREATED)

    @classmethod
    def open(cls, config: WalletConfig) -> "Wallet":
        """
        Open an existing wallet. The kind comes from wallet.json.

        Raises:
            NotFound: No wallet at config.storage_dir
            CorruptConfig: wallet.json unreadable, unknown version/kind, inconsistent
            WalletInUse: Another process holds the storage root
        """
        store = WalletStore(config.storage_dir)
        descriptor = store.read_descriptor()
        store.acquire_lock()
        try:
            descriptor = store.read_descriptor()
            if descriptor.kind is KeymanagerKind.DERIVED and not store.seed_path.exists():
                raise CorruptConfig("Derived wallet has no encrypted seed", operation="open",
                                    wallet_path=store.root)
        except BaseException:
            store.release_lock()
            raise
        if descriptor.kind is not config.kind:
            config = dataclasses.replace(config, kind=descriptor.kind)
        logger.info(f"Opened {descriptor.kind.value} wallet at {store.root}")
        return cls(config, store, descriptor, WalletState.LOCKED)

    @classmethod
    def recover(cls, config: WalletConfig, mnemonic: str, num_accounts: int,
                new_password: str, mnemonic_passphrase: str = "") -> "Wallet":
        """
        Recreate a derived wallet from its mnemonic at a new storage root.

        Derives accounts 0..num_accounts-1 and returns the wallet unlocked.

        Raises:
            InvalidMnemonic: Mnemonic fails the wordlist or checksum
            AlreadyExists: Storage root already holds a wallet
        """
        mnemonic = validate_mnemonic(mnemonic)
        if num_accounts < 0:
            raise ConfigError(f"Number of accounts must not be negative, got {num_accounts}",
                              operation="recover")
        config = dataclasses.replace(config, kind=KeymanagerKind.DERIVED)
        wallet = cls.create(config, new_password, mnemonic, mnemonic_passphrase)
        try:
            wallet.unlock(new_password)
            if num_accounts:
                wallet._keymanager.create_accounts(num_accounts)
        except BaseException:
            wallet.close()
            raise
        logger.info(f"Recovered derived wallet at {wallet.storage_dir} with {num_accounts} account(s)")
        return wallet

    # ============================================
    # Properties
    # ============================================

    @property
    def state(self) -> WalletState:
        return self._state

    @property
    def kind(self) -> KeymanagerKind:
        return self._descriptor.kind

    @property
    def storage_dir(self) -> Path:
        return self._store.root

    @property
    def label(self) -> str:
        return self._descriptor.label

    @property
    def remote(self) -> Optional[RemoteIdentity]:
        return self._descriptor.remote

    @property
    def keymanager(self):
        return self._keymanager

    @property
    def is_unlocked(self) -> bool:
        return self._state is WalletState.UNLOCKED

    def _ensure_open(self, operation: str) -> None:
        if self._state is WalletState.CLOSED:
            raise WalletClosed("Wallet is closed", operation=operation, wallet_path=self.storage_dir)

    # ============================================
    # Lifecycle
    # ============================================

    def unlock(self, password: Optional[str] = None) -> None:
        """
        Unlock key material for this session.

        Direct/derived: derive the session key and verify it against the
        configuration checksum and every stored account. Remote: check the
        TLS identity loads.

        Raises:
            WrongPassword / CorruptConfig / CorruptData
        """
        with self._rwlock.write():
            self._ensure_open("unlock")
            self._keymanager.unlock(password)
            self._state = WalletState.UNLOCKED

    def lock(self) -> None:
        """Erase session key material. Listing still works."""
        with self._rwlock.write():
            self._ensure_open("lock")
            self._keymanager.lock()
            self._state = WalletState.LOCKED

    def close(self) -> None:
        """Erase session material and release the storage lock."""
        with self._rwlock.write():
            if self._state is WalletState.CLOSED:
                return
            try:
                self._keymanager.close()
            finally:
                self._store.release_lock()
                self._state = WalletState.CLOSED
        logger.info(f"Closed wallet at {self.storage_dir}")

    def __enter__(self) -> "Wallet":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def edit_config(self, remote: Optional[RemoteIdentity] = None, label: Optional[str] = None) -> None:
        """
        Change mutable configuration and rewrite wallet.json atomically.

        Raises:
            Locked: Wallet is not unlocked
            UnsupportedForKind: Remote identity given for a non-remote wallet
        """
        with self._rwlock.write():
            self._ensure_open("edit-config")
            if self._state is not WalletState.UNLOCKED:
                raise Locked("Unlock the wallet before editing its configuration",
                             operation="edit-config", wallet_path=self.storage_dir)
            if remote is not None and self.kind is not KeymanagerKind.REMOTE:
                raise UnsupportedForKind(f"Remote settings do not apply to a {self.kind.value} wallet",
                                         operation="edit-config", wallet_path=self.storage_dir)
            changes = {}
            if remote is not None:
                build_client_context(remote)
                changes["remote"] = remote
            if label is not None:
                changes["label"] = label
            if not changes:
                return
            descriptor = dataclasses.replace(self._descriptor, **changes)
            self._store.write_descriptor(descriptor)
            self._descriptor = descriptor
            if remote is not None:
                self._keymanager.reconfigure(remote)
        logger.info(f"Updated configuration ({', '.join(changes)}) of wallet at {self.storage_dir}")

    # ============================================
    # Accounts
    # ============================================

    def list_accounts(self) -> AccountListing:
        self._ensure_open("list-accounts")
        return self._keymanager.list_accounts()

    def sign(self, public_key: bytes | str, signing_root: bytes) -> bytes:
        self._ensure_open("sign")
        return self._keymanager.sign(public_key, signing_root)

    def create_account(self) -> bytes:
        self._ensure_open("create-account")
        return self._keymanager.create_account()

    def delete_account(self, public_key: bytes | str) -> None:
        self._ensure_open("delete-account")
        self._keymanager.delete_account(public_key)

    def import_account(self, private_key: bytes | str) -> bytes:
        self._ensure_open("import-account")
        if self.kind is not KeymanagerKind.DIRECT:
            raise UnsupportedOperation(f"Cannot import keys into a {self.kind.value} wallet",
                                       operation="import-account", wallet_path=self.storage_dir)
        return self._keymanager.import_account(private_key)
