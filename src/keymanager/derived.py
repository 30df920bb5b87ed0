"""
Derived Keymanager - Keys derived from one BIP-39 mnemonic plus an index.

Only the encrypted mnemonic (and passphrase) and per-account index
metadata are stored. Each sign re-derives the account key inside a
scoped decryption; no private key outlives the call.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from models.account import DerivedAccount, DerivedIndex, DerivedSeed
from models.config import KeymanagerKind, WalletDescriptor
from models.store import WalletStore
from wallet.crypto import SecretBuffer, SessionKey
from wallet.derivation import DEFAULT_DERIVATION_PATH, derive_key, derive_seed, validate_mnemonic
from wallet.errors import CorruptData, UnknownAccount
from wallet.keys import address_of, check_signing_root, short_key, sign_root

from .base import (
    AccountListing, AccountLocks, ReadWriteLock, ensure_open, ensure_unlocked,
    open_session, parse_account
)

logger = logging.getLogger(__name__)


class DerivedKeymanager:
    """Keymanager for HD-derived keys."""

    kind = KeymanagerKind.DERIVED

    def __init__(self, store: WalletStore, descriptor: WalletDescriptor,
                 rwlock: Optional[ReadWriteLock] = None, sign_lock_timeout: float = 30.0):
        self._store = store
        self._descriptor = descriptor
        self._rwlock = rwlock or ReadWriteLock()
        self._account_locks = AccountLocks(sign_lock_timeout)
        self._session: Optional[SessionKey] = None
        self._seed_file: Optional[DerivedSeed] = None
        self._index = DerivedIndex()
        self._closed = False

    @staticmethod
    def initialize(store: WalletStore, session: SessionKey, mnemonic: str,
                   passphrase: str = "", path_template: str = DEFAULT_DERIVATION_PATH) -> None:
        """
        Write the encrypted seed and an empty account index for a new wallet.

        Raises:
            InvalidMnemonic: If the mnemonic fails the wordlist or checksum
        """
        normalized = validate_mnemonic(mnemonic)
        seed = DerivedSeed(
            mnemonic=session.seal(normalized.encode("utf-8")),
            passphrase=session.seal(passphrase.encode("utf-8")) if passphrase else None,
            path_template=path_template
        )
        store.write_seed(seed)
        store.write_index(DerivedIndex())

    @property
    def wallet_path(self) -> Path:
        return self._store.root

    @property
    def is_unlocked(self) -> bool:
        return self._session is not None

    # ============================================
    # Seed handling
    # ============================================

    @contextmanager
    def _seed(self, session: SessionKey, seed_file: DerivedSeed) -> Iterator[SecretBuffer]:
        """Decrypt the mnemonic and yield the BIP-39 seed, zeroed on exit."""
        with session.unseal(seed_file.mnemonic) as phrase:
            if seed_file.passphrase is not None:
                with session.unseal(seed_file.passphrase) as extra:
                    passphrase = extra.value.decode("utf-8")
            else:
                passphrase = ""
            seed = derive_seed(phrase.value.decode("utf-8"), passphrase)
        with seed:
            yield seed

    def _record(self, seed: SecretBuffer, index: int) -> DerivedAccount:
        with derive_key(seed, index, self._seed_file.path_template) as pair:
            return DerivedAccount(
                index=index,
                path=pair.path,
                public_key=pair.public_key,
                address=address_of(pair.public_key)
            )

    # ============================================
    # Lifecycle
    # ============================================

    def unlock(self, password: Optional[str] = None) -> None:
        """
        Derive the session key and re-derive every recorded index.

        Raises:
            WrongPassword: Password does not match the wallet
            CorruptData: A recorded public key does not match its index
        """
        with self._rwlock.write():
            ensure_open(self._closed, self.wallet_path)
            session = open_session(self._descriptor, password, self.wallet_path)
            try:
                seed_file = self._store.read_seed()
                index = self._store.read_index()
                with self._seed(session, seed_file) as seed:
                    for account in index.accounts:
                        with derive_key(seed, account.index, seed_file.path_template) as pair:
                            if pair.public_key != account.public_key:
                                raise CorruptData(
                                    f"Account at index {account.index} does not match its derivation",
                                    operation="unlock", wallet_path=self.wallet_path,
                                    account=short_key(account.public_key)
                                )
            except BaseException:
                session.erase()
                raise
            self._drop_session()
            self._session = session
            self._seed_file = seed_file
            self._index = index
        logger.info(f"Unlocked derived wallet with {len(index.accounts)} account(s)")

    def _drop_session(self) -> None:
        if self._session is not None:
            self._session.erase()
            self._session = None

    def lock(self) -> None:
        with self._rwlock.write():
            self._drop_session()
        logger.info("Locked derived wallet")

    def close(self) -> None:
        with self._rwlock.write():
            self._drop_session()
            self._closed = True

    # ============================================
    # Accounts
    # ============================================

    def list_accounts(self) -> AccountListing:
        """Public keys in index order. Works while locked."""
        def load():
            with self._rwlock.read():
                ensure_open(self._closed, self.wallet_path)
                return [a.public_key for a in self._store.read_index().accounts]
        return AccountListing(load)

    def account_info(self, public_key: bytes | str) -> DerivedAccount:
        public_key = parse_account(public_key, "account-info", self.wallet_path)
        with self._rwlock.read():
            account = self._store.read_index().find(public_key)
        if account is None:
            raise UnknownAccount("No such account", operation="account-info",
                                 wallet_path=self.wallet_path, account=short_key(public_key))
        return account

    def sign(self, public_key: bytes | str, signing_root: bytes) -> bytes:
        """
        Sign a 32-byte signing root with the account's derived key.

        Raises:
            Locked: Wallet not unlocked this session
            UnknownAccount: No index recorded for this public key
            AccountBusy: Account lock not obtained within the timeout
        """
        public_key = parse_account(public_key, "sign", self.wallet_path)
        signing_root = check_signing_root(signing_root)
        with self._rwlock.read():
            ensure_open(self._closed, self.wallet_path)
            session = ensure_unlocked(self._session, "sign", self.wallet_path)
            account = self._index.find(public_key)
            if account is None:
                raise UnknownAccount("No such account", operation="sign",
                                     wallet_path=self.wallet_path, account=short_key(public_key))
            with self._account_locks.hold(public_key):
                with self._seed(session, self._seed_file) as seed:
                    with derive_key(seed, account.index, self._seed_file.path_template) as pair:
                        signature = sign_root(pair.private_key, signing_root)
        logger.debug(f"Signed root for {short_key(public_key)} (index {account.index})")
        return signature

    def create_account(self) -> bytes:
        """Derive the next index and record its metadata. Returns its public key."""
        return self.create_accounts(1)[0]

    def create_accounts(self, count: int) -> list[bytes]:
        """Derive `count` new accounts in one write."""
        with self._rwlock.write():
            ensure_open(self._closed, self.wallet_path)
            session = ensure_unlocked(self._session, "create-account", self.wallet_path)
            index = self._index.copy()
            created = []
            with self._seed(session, self._seed_file) as seed:
                for _ in range(count):
                    account = self._record(seed, index.next_index)
                    index.add(account)
                    created.append(account)
            self._store.write_index(index)
            self._index = index
        for account in created:
            logger.info(f"Derived account {short_key(account.public_key)} at {account.path}")
        return [a.public_key for a in created]

    def delete_account(self, public_key: bytes | str) -> None:
        """Remove the index entry. The index is never reused."""
        public_key = parse_account(public_key, "delete-account", self.wallet_path)
        with self._rwlock.write():
            ensure_open(self._closed, self.wallet_path)
            ensure_unlocked(self._session, "delete-account", self.wallet_path)
            index = self._index.copy()
            account = index.remove(public_key)
            if account is None:
                raise UnknownAccount("No such account", operation="delete-account",
                                     wallet_path=self.wallet_path, account=short_key(public_key))
            self._store.write_index(index)
            self._index = index
            self._account_locks.discard(public_key)
        logger.info(f"Removed derived account {short_key(public_key)} (index {account.index} retired)")
