"""
Test the secret store: KDFs, AES-GCM blobs, session keys and scoped buffers.
"""

import json

import pytest

from conftest import CHEAP_ARGON2, CHEAP_SCRYPT
from wallet.crypto import (
    KDF_SCRYPT, EncryptedBlob, KdfParams, SecretBuffer, SessionKey,
    decrypt, encrypt, secure_erase
)
from wallet.errors import CorruptData, WrongPassword


@pytest.fixture
def kdf():
    return KdfParams.generate(**CHEAP_ARGON2)


class TestSecretBuffer:

    def test_erased_on_exit(self):
        with SecretBuffer(b"\x01" * 32) as secret:
            assert secret.reveal() == b"\x01" * 32
        assert secret.erased
        assert secret.value == bytearray(32)

    def test_erased_on_exception(self):
        secret = SecretBuffer(b"\x02" * 16)
        with pytest.raises(RuntimeError):
            with secret:
                raise RuntimeError("boom")
        assert secret.erased

    def test_bytearray_source_is_wiped(self):
        source = bytearray(b"\x03" * 8)
        secret = SecretBuffer(source)
        assert source == bytearray(8)
        assert secret.reveal() == b"\x03" * 8

    def test_repr_hides_contents(self):
        assert "03" not in repr(SecretBuffer(b"\x03" * 4))

    def test_secure_erase(self):
        buf = bytearray(b"secret")
        secure_erase(buf)
        assert buf == bytearray(6)


class TestEncryptDecrypt:

    def test_round_trip(self, kdf):
        blob = encrypt(b"validator key material", "pw", kdf)
        with decrypt(blob, "pw") as plaintext:
            assert plaintext.reveal() == b"validator key material"

    def test_wrong_password(self, kdf):
        blob = encrypt(b"data", "pw", kdf)
        with pytest.raises(WrongPassword):
            decrypt(blob, "not-pw")

    def test_tampered_ciphertext(self, kdf):
        blob = encrypt(b"data", "pw", kdf)
        blob.ciphertext = bytes([blob.ciphertext[0] ^ 0xFF]) + blob.ciphertext[1:]
        with pytest.raises(CorruptData):
            decrypt(blob, "pw")

    def test_tampered_tag(self, kdf):
        blob = encrypt(b"data", "pw", kdf)
        blob.tag = bytes(16)
        with pytest.raises(CorruptData):
            decrypt(blob, "pw")

    def test_scrypt(self):
        kdf = KdfParams.generate(KDF_SCRYPT, **CHEAP_SCRYPT)
        blob = encrypt(b"data", "pw", kdf)
        assert blob.kdf.algorithm == KDF_SCRYPT
        with decrypt(blob, "pw") as plaintext:
            assert plaintext.reveal() == b"data"

    def test_fresh_iv_per_encryption(self, kdf):
        first = encrypt(b"data", "pw", kdf)
        second = encrypt(b"data", "pw", kdf)
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext

    def test_blob_is_json_safe(self, kdf):
        blob = encrypt(b"data", "pw", kdf)
        restored = EncryptedBlob.from_dict(json.loads(json.dumps(blob.to_dict())))
        assert restored == blob
        with decrypt(restored, "pw") as plaintext:
            assert plaintext.reveal() == b"data"

    def test_blob_records_cipher_and_kdf(self, kdf):
        data = encrypt(b"data", "pw", kdf).to_dict()
        assert data["cipher"] == "aes-256-gcm"
        assert data["kdf"]["algorithm"] == "argon2id"
        assert data["kdf"]["memory_cost"] == CHEAP_ARGON2["memory_cost"]

    @pytest.mark.parametrize("mutate", [
        lambda d: d.pop("iv"),
        lambda d: d.update(iv="zz"),
        lambda d: d.update(cipher="aes-128-cbc"),
        lambda d: d["kdf"].update(algorithm="md5"),
        lambda d: d.update(tag="00"),
    ])
    def test_malformed_blob(self, kdf, mutate):
        data = encrypt(b"data", "pw", kdf).to_dict()
        mutate(data)
        with pytest.raises(CorruptData):
            EncryptedBlob.from_dict(data)


class TestKdfParams:

    def test_fresh_salt(self):
        assert KdfParams.generate(**CHEAP_ARGON2).salt != KdfParams.generate(**CHEAP_ARGON2).salt

    def test_unknown_algorithm(self):
        with pytest.raises(ValueError):
            KdfParams.generate("pbkdf2")

    def test_unknown_cost(self):
        with pytest.raises(ValueError):
            KdfParams.generate(iterations=10)

    def test_defaults(self):
        kdf = KdfParams.generate()
        assert kdf.costs == {"time_cost": 3, "memory_cost": 65536, "parallelism": 4}


class TestSessionKey:

    def test_seal_unseal_without_rederiving(self, kdf):
        with SessionKey.derive("pw", kdf) as session:
            blobs = [session.seal(bytes([i]) * 32) for i in range(3)]
            for i, blob in enumerate(blobs):
                with session.unseal(blob) as plaintext:
                    assert plaintext.reveal() == bytes([i]) * 32
        # Sealed blobs open with the plain password too
        with decrypt(blobs[0], "pw") as plaintext:
            assert plaintext.reveal() == bytes(32)

    def test_other_password_does_not_match(self, kdf):
        blob = encrypt(b"data", "pw", kdf)
        with SessionKey.derive("other", kdf) as session:
            assert not session.matches(blob)
            with pytest.raises(WrongPassword):
                session.unseal(blob)

    def test_erased_session_refuses(self, kdf):
        session = SessionKey.derive("pw", kdf)
        blob = session.seal(b"data")
        session.erase()
        assert session.erased
        with pytest.raises(ValueError):
            session.unseal(blob)
        with pytest.raises(ValueError):
            session.seal(b"data")
