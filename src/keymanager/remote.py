"""
Remote Keymanager - Signing delegated to a remote signer over mutual TLS.

No private key material is held locally. The channel is opened lazily
on first use; a dropped connection, timeout or failed handshake gets
exactly one reconnect-and-retry before RemoteUnavailable is raised.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional, TypeVar

from models.config import KeymanagerKind, RemoteIdentity, WalletDescriptor
from models.store import WalletStore
from services.channel import RemoteSigningChannel, build_client_context
from wallet.errors import (
    HandshakeFailed, RemoteTimeout, RemoteUnavailable, UnsupportedOperation
)
from wallet.keys import check_signing_root, short_key

from .base import AccountListing, AccountLocks, ReadWriteLock, ensure_open, parse_account

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures worth one reconnect. Rejections and unknown accounts are answers, not outages.
RETRYABLE_ERRORS = (HandshakeFailed, RemoteTimeout, RemoteUnavailable)


class RemoteKeymanager:
    """Keymanager backed by a remote signer."""

    kind = KeymanagerKind.REMOTE

    def __init__(self, store: WalletStore, descriptor: WalletDescriptor,
                 rwlock: Optional[ReadWriteLock] = None, sign_lock_timeout: float = 30.0,
                 channel_factory: Callable[[RemoteIdentity], RemoteSigningChannel] = RemoteSigningChannel.open):
        self._store = store
        self._identity = descriptor.remote
        self._rwlock = rwlock or ReadWriteLock()
        self._account_locks = AccountLocks(sign_lock_timeout)
        self._channel_factory = channel_factory
        self._channel: Optional[RemoteSigningChannel] = None
        self._channel_lock = threading.Lock()
        self._unlocked = False
        self._closed = False

    @property
    def wallet_path(self) -> Path:
        return self._store.root

    @property
    def identity(self) -> RemoteIdentity:
        return self._identity

    @property
    def is_unlocked(self) -> bool:
        return self._unlocked

    # ============================================
    # Lifecycle
    # ============================================

    def unlock(self, password: Optional[str] = None) -> None:
        """Check that the TLS identity loads. No password is involved."""
        with self._rwlock.write():
            ensure_open(self._closed, self.wallet_path)
            build_client_context(self._identity)
            self._unlocked = True
        logger.info(f"Remote identity for {self._identity.address} is loadable")

    def lock(self) -> None:
        with self._rwlock.write():
            self._unlocked = False
            self._drop_channel()

    def close(self) -> None:
        with self._rwlock.write():
            self._unlocked = False
            self._closed = True
            self._drop_channel()

    def reconfigure(self, identity: RemoteIdentity) -> None:
        """Switch to a new remote identity; the next call reconnects."""
        with self._rwlock.write():
            self._identity = identity
            self._drop_channel()
        logger.info(f"Remote signer set to {identity.address}")

    # ============================================
    # Channel
    # ============================================

    def _get_channel(self) -> RemoteSigningChannel:
        with self._channel_lock:
            if self._channel is None:
                self._channel = self._channel_factory(self._identity)
            return self._channel

    def _drop_channel(self, channel: Optional[RemoteSigningChannel] = None) -> None:
        with self._channel_lock:
            if channel is not None and channel is not self._channel:
                return
            current, self._channel = self._channel, None
        if current is not None:
            current.close()

    def _call(self, operation: str, action: Callable[[RemoteSigningChannel], T]) -> T:
        """Run an action on the channel, reconnecting once on an outage."""
        try:
            channel = self._get_channel()
            return action(channel)
        except RETRYABLE_ERRORS as first:
            logger.warning(f"Remote {operation} failed ({first.message}), reconnecting once")
            self._drop_channel()
        try:
            channel = self._get_channel()
            return action(channel)
        except RETRYABLE_ERRORS as e:
            self._drop_channel()
            raise RemoteUnavailable(
                f"Remote signer at {self._identity.address} unavailable after reconnect: {e.message}",
                operation=operation, wallet_path=self.wallet_path
            ) from e

    # ============================================
    # Accounts
    # ============================================

    def list_accounts(self) -> AccountListing:
        """Public keys fetched from the remote signer on each iteration."""
        def load():
            with self._rwlock.read():
                ensure_open(self._closed, self.wallet_path)
                return self._call("list-accounts", lambda channel: channel.list_public_keys())
        return AccountListing(load)

    def sign(self, public_key: bytes | str, signing_root: bytes) -> bytes:
        """
        Have the remote signer sign a root.

        Raises:
            UnknownAccount: The signer does not own the key
            RemoteRejected: The signer refused or returned a bad signature
            RemoteUnavailable: Unreachable after one reconnect
            AccountBusy: Account lock not obtained within the timeout
        """
        public_key = parse_account(public_key, "sign", self.wallet_path)
        signing_root = check_signing_root(signing_root)
        with self._rwlock.read():
            ensure_open(self._closed, self.wallet_path)
            with self._account_locks.hold(public_key):
                signature = self._call(
                    "sign", lambda channel: channel.request_signature(public_key, signing_root)
                )
        logger.debug(f"Remote signer signed root for {short_key(public_key)}")
        return signature

    def create_account(self) -> bytes:
        raise UnsupportedOperation("Remote wallets cannot create accounts; add them on the remote signer",
                                   operation="create-account", wallet_path=self.wallet_path)

    def delete_account(self, public_key: bytes | str) -> None:
        raise UnsupportedOperation("Remote wallets cannot delete accounts; remove them on the remote signer",
                                   operation="delete-account", wallet_path=self.wallet_path)
