"""
Mnemonic and HD derivation for derived wallets.

- BIP-39 English mnemonics (128-256 bits of entropy)
- BIP-32 derivation along a BIP-44 path, one leaf per account index

Derivation is a pure function of (mnemonic, passphrase, index): the same
inputs always give the same key pair, which is what recovery relies on.
"""

from dataclasses import dataclass

from mnemonic import Mnemonic
from eth_account.hdaccount import seed_from_mnemonic, key_from_seed

from .crypto import SecretBuffer
from .errors import DerivationError, InvalidMnemonic, UnsupportedEntropy
from .keys import public_key_of


# BIP-44 derivation path template, one account per address index
DEFAULT_DERIVATION_PATH = "m/44'/60'/0'/0/{}"

SUPPORTED_ENTROPY_BITS = (128, 160, 192, 224, 256)
MNEMONIC_LANGUAGE = "english"

_mnemo = Mnemonic(MNEMONIC_LANGUAGE)


@dataclass
class KeyPair:
    """A derived key pair. Erase (or use as a context manager) when done."""
    private_key: SecretBuffer
    public_key: bytes
    path: str

    def erase(self) -> None:
        self.private_key.erase()

    def __enter__(self) -> "KeyPair":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.erase()


def generate_mnemonic(entropy_bits: int = 256) -> str:
    """
    Generate a fresh BIP-39 mnemonic.

    Args:
        entropy_bits: 128 (12 words) up to 256 (24 words), in steps of 32

    Raises:
        UnsupportedEntropy: For any other size
    """
    if entropy_bits not in SUPPORTED_ENTROPY_BITS:
        raise UnsupportedEntropy(
            f"Entropy must be one of {SUPPORTED_ENTROPY_BITS} bits, got {entropy_bits}",
            operation="generate-mnemonic"
        )
    return _mnemo.generate(strength=entropy_bits)


def validate_mnemonic(phrase: str) -> str:
    """
    Normalize and check a mnemonic against the wordlist and checksum.

    Returns:
        The phrase as single-space separated lowercase words

    Raises:
        InvalidMnemonic: If a word is unknown or the checksum fails
    """
    if not isinstance(phrase, str):
        raise InvalidMnemonic("Mnemonic must be text", operation="validate-mnemonic")
    words = phrase.lower().split()
    normalized = " ".join(words)
    if len(words) not in (12, 15, 18, 21, 24) or not _mnemo.check(normalized):
        # Never echo the phrase back
        raise InvalidMnemonic(
            f"Invalid mnemonic ({len(words)} words): unknown word or bad checksum",
            operation="validate-mnemonic"
        )
    return normalized


def derive_seed(phrase: str, passphrase: str = "") -> SecretBuffer:
    """BIP-39 seed from a mnemonic and optional passphrase."""
    normalized = validate_mnemonic(phrase)
    return SecretBuffer(seed_from_mnemonic(normalized, passphrase))


def derivation_path(account_index: int, path_template: str = DEFAULT_DERIVATION_PATH) -> str:
    if not isinstance(account_index, int) or account_index < 0:
        raise DerivationError(f"Account index must be a non-negative integer, got {account_index!r}",
                              operation="derive-key")
    if account_index >= 2 ** 31:
        raise DerivationError(f"Account index out of range: {account_index}", operation="derive-key")
    return path_template.format(account_index)


def derive_key(seed: SecretBuffer, account_index: int,
               path_template: str = DEFAULT_DERIVATION_PATH) -> KeyPair:
    """
    Derive the key pair for an account index.

    Args:
        seed: BIP-39 seed (from derive_seed)
        account_index: 0, 1, 2, ...
        path_template: BIP-32 path with a {} placeholder for the index

    Returns:
        KeyPair whose private key must be erased by the caller
    """
    path = derivation_path(account_index, path_template)
    private_key = SecretBuffer(key_from_seed(seed.reveal(), path))
    try:
        public_key = public_key_of(private_key)
    except ValueError:
        private_key.erase()
        raise DerivationError(f"Derived an invalid key at {path}", operation="derive-key") from None
    return KeyPair(private_key=private_key, public_key=public_key, path=path)
