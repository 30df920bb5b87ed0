"""
Models package - Data models for the validator wallet.

Contains:
- WalletConfig / RemoteIdentity: explicit wallet configuration
- WalletDescriptor: persisted wallet.json
- DirectKeystore / DerivedAccount / DerivedIndex / DerivedSeed: account records
- WalletStore: JSON persistence for a storage root
"""

from .config import (
    KeymanagerKind,
    RemoteIdentity,
    WalletConfig,
    WalletDescriptor,
    WALLET_VERSION,
    DEFAULT_REMOTE_TIMEOUT,
    DEFAULT_SIGN_LOCK_TIMEOUT,
)
from .account import DirectKeystore, DerivedAccount, DerivedIndex, DerivedSeed
from .store import WalletStore

__all__ = [
    "KeymanagerKind",
    "RemoteIdentity",
    "WalletConfig",
    "WalletDescriptor",
    "WALLET_VERSION",
    "DEFAULT_REMOTE_TIMEOUT",
    "DEFAULT_SIGN_LOCK_TIMEOUT",
    "DirectKeystore",
    "DerivedAccount",
    "DerivedIndex",
    "DerivedSeed",
    "WalletStore",
]
