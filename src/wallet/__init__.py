"""
Wallet package - Secure key management for validators.

Contains:
- crypto: Secret store (Argon2id/scrypt + AES-256-GCM), SecretBuffer, SessionKey
- keys: secp256k1 signing key primitives
- derivation: BIP-39 mnemonics and BIP-32/44 derivation
- errors: Failure taxonomy
- manager: Wallet lifecycle (import from wallet.manager)
"""

from .crypto import (
    SecretBuffer,
    SessionKey,
    KdfParams,
    EncryptedBlob,
    encrypt,
    decrypt,
    secure_erase,
    KDF_ARGON2ID,
    KDF_SCRYPT,
)
from .keys import (
    generate_private_key,
    public_key_of,
    address_of,
    sign_root,
    verify_signature,
    normalize_public_key,
)
from .derivation import (
    KeyPair,
    generate_mnemonic,
    validate_mnemonic,
    derive_seed,
    derive_key,
    DEFAULT_DERIVATION_PATH,
)
from .errors import WalletError

__all__ = [
    # Crypto
    "SecretBuffer",
    "SessionKey",
    "KdfParams",
    "EncryptedBlob",
    "encrypt",
    "decrypt",
    "secure_erase",
    "KDF_ARGON2ID",
    "KDF_SCRYPT",
    # Keys
    "generate_private_key",
    "public_key_of",
    "address_of",
    "sign_root",
    "verify_signature",
    "normalize_public_key",
    # Derivation
    "KeyPair",
    "generate_mnemonic",
    "validate_mnemonic",
    "derive_seed",
    "derive_key",
    "DEFAULT_DERIVATION_PATH",
    # Errors
    "WalletError",
]
