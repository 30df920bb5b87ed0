"""
Direct Keymanager - Locally generated keys, one encrypted keystore per account.

Keystores are sealed under the wallet's session key. A private key is
only ever decrypted inside one sign (or unlock check) and is zeroed
when that scope ends.
"""

import logging
from pathlib import Path
from typing import Optional

from models.account import DirectKeystore
from models.config import KeymanagerKind, WalletDescriptor
from models.store import WalletStore
from wallet.crypto import SecretBuffer, SessionKey
from wallet.errors import AlreadyExists, CorruptData, UnknownAccount
from wallet.keys import (
    PRIVATE_KEY_SIZE, address_of, check_signing_root, generate_private_key,
    public_key_of, short_key, sign_root
)

from .base import (
    AccountListing, AccountLocks, ReadWriteLock, ensure_open, ensure_unlocked,
    open_session, parse_account
)

logger = logging.getLogger(__name__)


class DirectKeymanager:
    """Keymanager for locally generated (or imported) keys."""

    kind = KeymanagerKind.DIRECT

    def __init__(self, store: WalletStore, descriptor: WalletDescriptor,
                 rwlock: Optional[ReadWriteLock] = None, sign_lock_timeout: float = 30.0):
        self._store = store
        self._descriptor = descriptor
        self._rwlock = rwlock or ReadWriteLock()
        self._account_locks = AccountLocks(sign_lock_timeout)
        self._session: Optional[SessionKey] = None
        self._keystores: dict[bytes, DirectKeystore] = {}
        self._closed = False

    @property
    def wallet_path(self) -> Path:
        return self._store.root

    @property
    def is_unlocked(self) -> bool:
        return self._session is not None

    # ============================================
    # Lifecycle
    # ============================================

    def unlock(self, password: Optional[str] = None) -> None:
        """
        Derive the session key and verify every keystore against its public key.

        Raises:
            WrongPassword: Password does not match the wallet
            CorruptData: A keystore does not decrypt to its stored public key
        """
        with self._rwlock.write():
            ensure_open(self._closed, self.wallet_path)
            session = open_session(self._descriptor, password, self.wallet_path)
            try:
                keystores = self._store.list_keystores()
                for keystore in keystores:
                    self._verify(session, keystore)
            except BaseException:
                session.erase()
                raise
            self._drop_session()
            self._session = session
            self._keystores = {k.public_key: k for k in keystores}
        logger.info(f"Unlocked direct wallet with {len(keystores)} account(s)")

    def _verify(self, session: SessionKey, keystore: DirectKeystore) -> None:
        account = short_key(keystore.public_key)
        if not session.matches(keystore.crypto):
            raise CorruptData("Keystore was sealed under a different password",
                              operation="unlock", wallet_path=self.wallet_path, account=account)
        try:
            secret = session.unseal(keystore.crypto)
        except CorruptData as e:
            raise CorruptData(e.message, operation="unlock",
                              wallet_path=self.wallet_path, account=account) from e
        with secret:
            try:
                derived = public_key_of(secret)
            except ValueError:
                derived = None
        if derived != keystore.public_key:
            raise CorruptData("Keystore does not match its public key",
                              operation="unlock", wallet_path=self.wallet_path, account=account)

    def _drop_session(self) -> None:
        if self._session is not None:
            self._session.erase()
            self._session = None
        self._keystores = {}

    def lock(self) -> None:
        with self._rwlock.write():
            self._drop_session()
        logger.info("Locked direct wallet")

    def close(self) -> None:
        with self._rwlock.write():
            self._drop_session()
            self._closed = True

    # ============================================
    # Accounts
    # ============================================

    def list_accounts(self) -> AccountListing:
        """Public keys in creation order. Works while locked."""
        def load():
            with self._rwlock.read():
                ensure_open(self._closed, self.wallet_path)
                return [k.public_key for k in self._store.list_keystores()]
        return AccountListing(load)

    def sign(self, public_key: bytes | str, signing_root: bytes) -> bytes:
        """
        Sign a 32-byte signing root with the account's key.

        Raises:
            Locked: Wallet not unlocked this session
            UnknownAccount: No keystore for this public key
            AccountBusy: Account lock not obtained within the timeout
        """
        public_key = parse_account(public_key, "sign", self.wallet_path)
        signing_root = check_signing_root(signing_root)
        with self._rwlock.read():
            ensure_open(self._closed, self.wallet_path)
            session = ensure_unlocked(self._session, "sign", self.wallet_path)
            keystore = self._keystores.get(public_key)
            if keystore is None:
                raise UnknownAccount("No such account", operation="sign",
                                     wallet_path=self.wallet_path, account=short_key(public_key))
            with self._account_locks.hold(public_key):
                with session.unseal(keystore.crypto) as secret:
                    signature = sign_root(secret, signing_root)
        logger.debug(f"Signed root for {short_key(public_key)}")
        return signature

    def create_account(self) -> bytes:
        """Generate and store a fresh key. Returns its public key."""
        with generate_private_key() as secret:
            return self._store_key(secret, "create-account")

    def import_account(self, private_key: bytes | bytearray | str) -> bytes:
        """
        Bring an existing private key under custody.

        Args:
            private_key: 32 raw bytes or 0x-prefixed hex
        """
        if isinstance(private_key, str):
            text = private_key[2:] if private_key.startswith(("0x", "0X")) else private_key
            try:
                private_key = bytes.fromhex(text)
            except ValueError:
                raise ValueError("Private key is not valid hex") from None
        if len(private_key) != PRIVATE_KEY_SIZE:
            raise ValueError(f"Private key must be {PRIVATE_KEY_SIZE} bytes")
        with SecretBuffer(private_key) as secret:
            return self._store_key(secret, "import-account")

    def _store_key(self, secret: SecretBuffer, operation: str) -> bytes:
        with self._rwlock.write():
            ensure_open(self._closed, self.wallet_path)
            session = ensure_unlocked(self._session, operation, self.wallet_path)
            public_key = public_key_of(secret)
            if public_key in self._keystores:
                raise AlreadyExists("Account already exists", operation=operation,
                                    wallet_path=self.wallet_path, account=short_key(public_key))
            sequence = max((k.sequence for k in self._keystores.values()), default=-1) + 1
            keystore = DirectKeystore(
                public_key=public_key,
                address=address_of(public_key),
                crypto=session.seal(secret.value),
                sequence=sequence
            )
            self._store.write_keystore(keystore)
            self._keystores[public_key] = keystore
        logger.info(f"Stored direct account {short_key(public_key)} ({operation})")
        return public_key

    def delete_account(self, public_key: bytes | str) -> None:
        """Remove the account's keystore file."""
        public_key = parse_account(public_key, "delete-account", self.wallet_path)
        with self._rwlock.write():
            ensure_open(self._closed, self.wallet_path)
            ensure_unlocked(self._session, "delete-account", self.wallet_path)
            if public_key not in self._keystores:
                raise UnknownAccount("No such account", operation="delete-account",
                                     wallet_path=self.wallet_path, account=short_key(public_key))
            self._store.delete_keystore(public_key)
            del self._keystores[public_key]
            self._account_locks.discard(public_key)
        logger.info(f"Deleted direct account {short_key(public_key)}")
