"""
Keymanager package - The three custody models behind one contract.

Contains:
- DirectKeymanager: locally generated keys, one keystore per account
- DerivedKeymanager: BIP-39/44 keys from one mnemonic
- RemoteKeymanager: signing over mutual TLS
- ReadWriteLock, AccountLocks, AccountListing: shared concurrency pieces
"""

from .base import AccountListing, AccountLocks, Keymanager, ReadWriteLock, open_session, seal_checksum
from .direct import DirectKeymanager
from .derived import DerivedKeymanager
from .remote import RemoteKeymanager

from models.config import KeymanagerKind

KEYMANAGERS = {
    KeymanagerKind.DIRECT: DirectKeymanager,
    KeymanagerKind.DERIVED: DerivedKeymanager,
    KeymanagerKind.REMOTE: RemoteKeymanager,
}

__all__ = [
    "AccountListing",
    "AccountLocks",
    "Keymanager",
    "ReadWriteLock",
    "open_session",
    "seal_checksum",
    "DirectKeymanager",
    "DerivedKeymanager",
    "RemoteKeymanager",
    "KEYMANAGERS",
]
