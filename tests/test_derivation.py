"""
Test mnemonic generation and HD derivation.
"""

import pytest

from conftest import TEST_ADDRESS_0, TEST_MNEMONIC
from wallet.derivation import (
    DEFAULT_DERIVATION_PATH, derive_key, derive_seed, generate_mnemonic, validate_mnemonic
)
from wallet.errors import DerivationError, InvalidMnemonic, UnsupportedEntropy
from wallet.keys import address_of, public_key_of


@pytest.mark.parametrize("bits,words", [(128, 12), (160, 15), (192, 18), (224, 21), (256, 24)])
def test_generate_mnemonic_word_counts(bits, words):
    phrase = generate_mnemonic(bits)
    assert len(phrase.split()) == words
    assert validate_mnemonic(phrase) == phrase


@pytest.mark.parametrize("bits", [0, 64, 100, 512])
def test_unsupported_entropy(bits):
    with pytest.raises(UnsupportedEntropy):
        generate_mnemonic(bits)


def test_unsupported_entropy_is_a_derivation_error():
    with pytest.raises(DerivationError):
        generate_mnemonic(129)


def test_validate_normalizes_case_and_whitespace():
    messy = "  " + TEST_MNEMONIC.upper().replace(" ", "   ") + "\n"
    assert validate_mnemonic(messy) == TEST_MNEMONIC


@pytest.mark.parametrize("phrase", [
    "abandon " * 11 + "abandon",          # bad checksum
    "abandon " * 11 + "notaword",         # unknown word
    "abandon abandon abandon",            # wrong length
    "",
])
def test_invalid_mnemonic(phrase):
    with pytest.raises(InvalidMnemonic):
        validate_mnemonic(phrase)


def test_invalid_mnemonic_message_does_not_echo_phrase():
    with pytest.raises(InvalidMnemonic) as exc:
        validate_mnemonic("abandon " * 11 + "zebra")
    assert "zebra" not in str(exc.value)


def test_known_vector():
    with derive_seed(TEST_MNEMONIC) as seed:
        with derive_key(seed, 0) as pair:
            assert pair.path == "m/44'/60'/0'/0/0"
            assert address_of(pair.public_key) == TEST_ADDRESS_0
            assert public_key_of(pair.private_key) == pair.public_key


def test_determinism():
    def keys(passphrase=""):
        with derive_seed(TEST_MNEMONIC, passphrase) as seed:
            result = []
            for index in range(3):
                with derive_key(seed, index) as pair:
                    result.append(pair.public_key)
            return result

    first = keys()
    assert first == keys()
    assert len(set(first)) == 3
    assert keys("extra words") != first


def test_key_pair_is_erased():
    with derive_seed(TEST_MNEMONIC) as seed:
        pair = derive_key(seed, 1)
        with pair:
            pass
    assert pair.private_key.erased
    assert seed.erased


def test_negative_index():
    with derive_seed(TEST_MNEMONIC) as seed:
        with pytest.raises(DerivationError):
            derive_key(seed, -1)


def test_custom_path_template():
    with derive_seed(TEST_MNEMONIC) as seed:
        with derive_key(seed, 0, "m/44'/60'/1'/0/{}") as other:
            with derive_key(seed, 0, DEFAULT_DERIVATION_PATH) as default:
                assert other.public_key != default.public_key
