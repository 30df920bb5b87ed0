"""
Shared fixtures:
- Cheap KDF costs so tests do not spend seconds per unlock
- Wallet configs rooted in tmp_path
- A throwaway X.509 CA with server and client certificates
- A running reference remote signer backed by a direct wallet
"""

import datetime
import ipaddress
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from models.config import KeymanagerKind, RemoteIdentity, WalletConfig
from services.server import RemoteSignerServer, build_server_context
from services.signing import SigningService
from wallet.manager import Wallet

PASSWORD = "correct horse battery staple"
CHEAP_ARGON2 = {"time_cost": 1, "memory_cost": 1024, "parallelism": 1}
CHEAP_SCRYPT = {"n": 1 << 10, "r": 8, "p": 1}

# BIP-39 test vector; account 0 at m/44'/60'/0'/0/0 is a well-known address
TEST_MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
TEST_ADDRESS_0 = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"


def make_config(storage_dir: Path, kind=KeymanagerKind.DIRECT, **overrides) -> WalletConfig:
    overrides.setdefault("kdf_costs", dict(CHEAP_ARGON2))
    return WalletConfig(storage_dir=storage_dir, kind=kind, **overrides)


@pytest.fixture
def wallet_dir(tmp_path) -> Path:
    return tmp_path / "wallet"


@pytest.fixture
def direct_wallet(wallet_dir):
    """Unlocked direct wallet with no accounts."""
    wallet = Wallet.create(make_config(wallet_dir), PASSWORD)
    wallet.unlock(PASSWORD)
    yield wallet
    wallet.close()


@pytest.fixture
def derived_wallet(tmp_path):
    """Unlocked derived wallet on the test mnemonic, no accounts yet."""
    wallet = Wallet.create(make_config(tmp_path / "derived", KeymanagerKind.DERIVED), PASSWORD, TEST_MNEMONIC)
    wallet.unlock(PASSWORD)
    yield wallet
    wallet.close()


# ============================================
# Certificates
# ============================================

def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _write_key(path: Path, key) -> None:
    path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption()
    ))


def _write_cert(path: Path, cert: x509.Certificate) -> None:
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))


def _key_usage(ca: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True, content_commitment=False, key_encipherment=False,
        data_encipherment=False, key_agreement=False, key_cert_sign=ca, crl_sign=ca,
        encipher_only=False, decipher_only=False
    )


class CertificateAuthority:
    """Throwaway CA that issues leaf certificates into a directory."""

    def __init__(self, directory: Path):
        self.directory = directory
        self.key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.datetime.now(datetime.timezone.utc)
        self.cert = (
            x509.CertificateBuilder()
            .subject_name(_name("Test Validator CA"))
            .issuer_name(_name("Test Validator CA"))
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=30))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(_key_usage(ca=True), critical=True)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(self.key.public_key()), critical=False)
            .sign(self.key, hashes.SHA256())
        )
        self.cert_path = directory / "ca.pem"
        _write_cert(self.cert_path, self.cert)

    def issue(self, name: str, server: bool, expired: bool = False) -> tuple[Path, Path]:
        """Issue a leaf certificate. Returns (cert_path, key_path)."""
        key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.datetime.now(datetime.timezone.utc)
        if expired:
            not_before, not_after = now - datetime.timedelta(days=10), now - datetime.timedelta(days=1)
        else:
            not_before, not_after = now - datetime.timedelta(days=1), now + datetime.timedelta(days=30)
        usage = ExtendedKeyUsageOID.SERVER_AUTH if server else ExtendedKeyUsageOID.CLIENT_AUTH
        builder = (
            x509.CertificateBuilder()
            .subject_name(_name(name))
            .issuer_name(self.cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(_key_usage(ca=False), critical=True)
            .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(self.key.public_key()),
                           critical=False)
        )
        if server:
            builder = builder.add_extension(x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
            ]), critical=False)
        cert = builder.sign(self.key, hashes.SHA256())
        cert_path = self.directory / f"{name}.pem"
        key_path = self.directory / f"{name}.key"
        _write_cert(cert_path, cert)
        _write_key(key_path, key)
        return cert_path, key_path


@pytest.fixture(scope="session")
def pki(tmp_path_factory):
    """CA plus server, client, expired client and expired server certificates."""
    directory = tmp_path_factory.mktemp("pki")
    ca = CertificateAuthority(directory)
    return {
        "ca": ca.cert_path,
        "server": ca.issue("server", server=True),
        "client": ca.issue("client", server=False),
        "expired_client": ca.issue("expired-client", server=False, expired=True),
        "expired_server": ca.issue("expired-server", server=True, expired=True),
    }


def client_identity(pki, port: int, timeout: float = 2.0, client: str = "client") -> RemoteIdentity:
    cert_path, key_path = pki[client]
    return RemoteIdentity(
        address=f"127.0.0.1:{port}",
        cert_path=str(cert_path),
        key_path=str(key_path),
        ca_cert_path=str(pki["ca"]),
        timeout=timeout
    )


# ============================================
# Remote signer
# ============================================

class SignerHarness:
    """A direct wallet served by the reference remote signer."""

    def __init__(self, root: Path, pki):
        self.pki = pki
        self.wallet = Wallet.create(make_config(root), PASSWORD)
        self.wallet.unlock(PASSWORD)
        self.accounts = [self.wallet.create_account() for _ in range(2)]
        self.service = SigningService(self.wallet)
        self.server = None
        self.port = 0

    def start(self, port: int = 0, server_cert: str = "server") -> int:
        cert_path, key_path = self.pki[server_cert]
        context = build_server_context(str(cert_path), str(key_path), str(self.pki["ca"]))
        self.server = RemoteSignerServer(self.service, context)
        self.port = self.server.start(port)
        return self.port

    def stop(self) -> None:
        if self.server is not None:
            self.server.stop()
            self.server = None

    def identity(self, **kwargs) -> RemoteIdentity:
        return client_identity(self.pki, self.port, **kwargs)

    def close(self) -> None:
        self.stop()
        self.wallet.close()


@pytest.fixture
def signer(tmp_path, pki):
    harness = SignerHarness(tmp_path / "signer", pki)
    harness.start()
    yield harness
    harness.close()
