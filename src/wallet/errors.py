"""
Wallet Errors - Failure taxonomy for wallets and keymanagers.

Every error carries optional context (operation, wallet path, account)
so the CLI can render a precise message. Secret values never go into
an error message.
"""

from pathlib import Path
from typing import Optional


class WalletError(Exception):
    """Base class for all wallet and keymanager failures."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        wallet_path: Optional[str | Path] = None,
        account: Optional[str] = None
    ):
        self.message = message
        self.operation = operation
        self.wallet_path = str(wallet_path) if wallet_path is not None else None
        self.account = account
        super().__init__(self.render())

    def render(self) -> str:
        """Format: '<operation>: <message> (wallet=<path>, account=<id>)'."""
        text = f"{self.operation}: {self.message}" if self.operation else self.message
        context = []
        if self.wallet_path:
            context.append(f"wallet={self.wallet_path}")
        if self.account:
            context.append(f"account={self.account}")
        if context:
            text = f"{text} ({', '.join(context)})"
        return text


# ============================================
# Configuration
# ============================================

class ConfigError(WalletError):
    """Missing or corrupt wallet configuration."""


class NotFound(ConfigError):
    """No wallet at the given storage root."""


class CorruptConfig(ConfigError):
    """Wallet configuration exists but cannot be trusted."""


class AlreadyExists(ConfigError):
    """Storage root already holds a wallet."""


# ============================================
# Cryptography
# ============================================

class CryptoError(WalletError):
    """Decryption failed; retry with the correct input."""


class WrongPassword(CryptoError):
    pass


class CorruptData(CryptoError):
    """Ciphertext is malformed, tampered with, or does not match its account."""


# ============================================
# Derivation
# ============================================

class DerivationError(WalletError):
    """Mnemonic or derivation input is invalid."""


class InvalidMnemonic(DerivationError):
    pass


class UnsupportedEntropy(DerivationError):
    pass


# ============================================
# Remote signing
# ============================================

class RemoteError(WalletError):
    """Remote signer could not complete a request."""


class HandshakeFailed(RemoteError):
    pass


class CertificateExpired(RemoteError):
    pass


class RemoteTimeout(RemoteError):
    pass


class RemoteRejected(RemoteError):
    """The remote signer answered but refused the request."""


class RemoteUnavailable(RemoteError):
    """The remote signer stayed unreachable after one reconnect."""


# ============================================
# Concurrency
# ============================================

class ConcurrencyError(WalletError):
    """Lock contention; the caller should requeue."""


class AccountBusy(ConcurrencyError):
    pass


class WalletInUse(ConcurrencyError):
    """Another process holds the storage root lock."""


# ============================================
# Operation / state
# ============================================

class UnsupportedOperation(WalletError):
    """Operation is not valid for the bound keymanager kind."""


class UnsupportedForKind(UnsupportedOperation):
    """Configuration field does not apply to the wallet's keymanager kind."""


class Locked(WalletError):
    """Key material has not been unlocked this session."""


class UnknownAccount(WalletError):
    """Public key is not owned by this keymanager."""


class WalletClosed(WalletError):
    pass
