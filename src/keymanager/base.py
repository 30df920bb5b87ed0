"""
Keymanager Base - Locks, listings and the capability contract shared by
every keymanager kind.

Contains:
- ReadWriteLock: wallet-wide lock (readers: sign/list, writers: the rest)
- AccountLocks: per-public-key mutual exclusion for one sign call
- AccountListing: lazy, restartable iterable of public keys
- Keymanager: the protocol each kind implements explicitly
- open_session: password -> verified SessionKey
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, Optional, Protocol

from models.config import KeymanagerKind, WalletDescriptor
from wallet.crypto import SessionKey
from wallet.errors import (
    AccountBusy, CorruptConfig, CorruptData, Locked, UnknownAccount, WalletClosed, WrongPassword
)
from wallet.keys import normalize_public_key, short_key

logger = logging.getLogger(__name__)


# ============================================
# Locks
# ============================================

class ReadWriteLock:
    """
    Many readers or one writer.

    The writer may re-enter (write inside write, or read inside write)
    from the thread that holds it. Both sides are context managers and
    release on every exit path.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: Optional[int] = None
        self._writer_depth = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                reentrant = True
            else:
                reentrant = False
                while self._writer is not None:
                    self._cond.wait()
                self._readers += 1
        try:
            yield
        finally:
            if not reentrant:
                with self._cond:
                    self._readers -= 1
                    if self._readers == 0:
                        self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
            else:
                while self._writer is not None or self._readers > 0:
                    self._cond.wait()
                self._writer = me
                self._writer_depth = 1
        try:
            yield
        finally:
            with self._cond:
                self._writer_depth -= 1
                if self._writer_depth == 0:
                    self._writer = None
                    self._cond.notify_all()


class AccountLocks:
    """Per-account locks, created on first use."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._locks: dict[bytes, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, public_key: bytes) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(public_key)
            if lock is None:
                lock = self._locks[public_key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, public_key: bytes) -> Iterator[None]:
        """
        Hold the account's lock for the duration of the block.

        Raises:
            AccountBusy: If the lock is not obtained within the timeout
        """
        lock = self._lock_for(public_key)
        if not lock.acquire(timeout=self.timeout):
            logger.warning(f"Timed out waiting for account lock on {short_key(public_key)}")
            raise AccountBusy(f"Account is busy (waited {self.timeout:g}s)",
                              operation="sign", account=short_key(public_key))
        try:
            yield
        finally:
            lock.release()

    def discard(self, public_key: bytes) -> None:
        with self._guard:
            self._locks.pop(public_key, None)


# ============================================
# Listing
# ============================================

class AccountListing:
    """
    Lazy, finite, restartable iterable of public keys.

    Nothing is loaded until iteration starts; each new iteration calls
    the loader again, so a listing always reflects the current state.
    """

    def __init__(self, loader: Callable[[], Iterable[bytes]]):
        self._loader = loader

    def __iter__(self) -> Iterator[bytes]:
        yield from self._loader()


# ============================================
# Capability contract
# ============================================

class Keymanager(Protocol):
    """What every keymanager kind provides."""

    kind: KeymanagerKind

    @property
    def is_unlocked(self) -> bool: ...

    def unlock(self, password: Optional[str] = None) -> None: ...

    def lock(self) -> None: ...

    def close(self) -> None: ...

    def list_accounts(self) -> AccountListing: ...

    def sign(self, public_key: bytes | str, signing_root: bytes) -> bytes: ...

    def create_account(self) -> bytes: ...

    def delete_account(self, public_key: bytes | str) -> None: ...


# ============================================
# Helpers
# ============================================

def open_session(descriptor: WalletDescriptor, password: Optional[str],
                 wallet_path=None) -> SessionKey:
    """
    Derive the session key and check it against the configuration checksum.

    Raises:
        Locked: No password given
        WrongPassword: The password does not match
        CorruptConfig: The checksum decrypts but does not match wallet.json
    """
    if password is None:
        raise Locked("A password is required to unlock this wallet",
                     operation="unlock", wallet_path=wallet_path)
    session = SessionKey.derive(password, descriptor.kdf)
    try:
        try:
            payload = session.unseal(descriptor.checksum)
        except WrongPassword:
            raise WrongPassword("Wrong password", operation="unlock", wallet_path=wallet_path) from None
        except CorruptData as e:
            raise CorruptConfig("Configuration checksum failed authentication",
                                operation="unlock", wallet_path=wallet_path) from e
        with payload:
            if bytes(payload.value) != descriptor.checksum_payload():
                raise CorruptConfig("Configuration checksum does not match wallet.json",
                                    operation="unlock", wallet_path=wallet_path)
    except BaseException:
        session.erase()
        raise
    return session


def seal_checksum(session: SessionKey, descriptor: WalletDescriptor) -> None:
    """Seal the configuration checksum into the descriptor."""
    descriptor.checksum = session.seal(descriptor.checksum_payload())


def ensure_open(closed: bool, wallet_path=None) -> None:
    if closed:
        raise WalletClosed("Keymanager is closed", wallet_path=wallet_path)


def ensure_unlocked(session: Optional[SessionKey], operation: str, wallet_path=None) -> SessionKey:
    if session is None:
        raise Locked("Wallet is locked", operation=operation, wallet_path=wallet_path)
    return session


def parse_account(public_key: bytes | str, operation: str, wallet_path=None) -> bytes:
    """Normalize a public key argument; a malformed key is never owned."""
    try:
        return normalize_public_key(public_key)
    except (TypeError, ValueError) as e:
        raise UnknownAccount(f"Not a valid public key: {e}", operation=operation,
                             wallet_path=wallet_path) from None
