"""
Remote Signing Channel - Mutual-TLS client for a remote signer.

Speaks JSON over HTTPS:
- GET /health    handshake check
- GET /accounts  public keys the signer owns
- POST /sign     {public_key, signing_root} -> {signature}

Connections are opened lazily, kept alive and pooled. The channel does
not retry; the Remote keymanager owns the single reconnect-and-retry.
"""

import http.client
import json
import logging
import ssl
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509

from models.config import RemoteIdentity
from wallet.errors import (
    CertificateExpired, ConfigError, HandshakeFailed, RemoteRejected,
    RemoteTimeout, RemoteUnavailable, UnknownAccount
)
from wallet.keys import check_signing_root, public_key_hex, short_key, verify_signature

logger = logging.getLogger(__name__)

MAX_IDLE_CONNECTIONS = 8

# OpenSSL X509_V_ERR_CERT_HAS_EXPIRED
X509_CERT_HAS_EXPIRED = 10


# ============================================
# TLS identity
# ============================================

def check_certificate_validity(cert_path: str | Path, now: Optional[datetime] = None) -> x509.Certificate:
    """
    Load a PEM certificate and check its validity window.

    Raises:
        ConfigError: If the file cannot be read or parsed
        CertificateExpired: If the certificate's notAfter has passed
        HandshakeFailed: If the certificate is not valid yet
    """
    try:
        cert = x509.load_pem_x509_certificate(Path(cert_path).read_bytes())
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot load certificate {cert_path}: {e}", operation="remote-identity") from e
    now = now or datetime.now(timezone.utc)
    if now > cert.not_valid_after_utc:
        raise CertificateExpired(f"Client certificate expired at {cert.not_valid_after_utc.isoformat()}",
                                 operation="remote-identity")
    if now < cert.not_valid_before_utc:
        raise HandshakeFailed(f"Client certificate not valid before {cert.not_valid_before_utc.isoformat()}",
                              operation="remote-identity")
    return cert


def build_client_context(identity: RemoteIdentity) -> ssl.SSLContext:
    """
    Mutual-TLS client context: verify the server against the CA and
    present the client certificate.
    """
    missing = identity.missing_files()
    if missing:
        raise ConfigError(f"TLS files not found: {', '.join(missing)}", operation="remote-identity")
    check_certificate_validity(identity.cert_path)
    try:
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=identity.ca_cert_path)
        context.load_cert_chain(identity.cert_path, identity.key_path)
    except (OSError, ssl.SSLError) as e:
        raise ConfigError(f"Cannot load TLS identity: {e}", operation="remote-identity") from e
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


def _tls_error(error: ssl.SSLError, operation: str):
    """Map a TLS failure to the wallet taxonomy."""
    if getattr(error, "verify_code", None) == X509_CERT_HAS_EXPIRED:
        return CertificateExpired(f"Remote certificate expired: {error}", operation=operation)
    if "CERTIFICATE_EXPIRED" in str(getattr(error, "reason", "") or "").upper():
        return CertificateExpired(f"Remote signer rejected an expired certificate: {error}", operation=operation)
    return HandshakeFailed(f"TLS handshake failed: {error}", operation=operation)


# ============================================
# Channel
# ============================================

class RemoteSigningChannel:
    """Pooled HTTPS client for one remote signer."""

    def __init__(self, identity: RemoteIdentity, context: ssl.SSLContext):
        self.identity = identity
        self._context = context
        self._idle: list[http.client.HTTPSConnection] = []
        self._pool_lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, identity: RemoteIdentity) -> "RemoteSigningChannel":
        """
        Build the TLS context and perform an eager handshake.

        Raises:
            ConfigError: TLS files missing or unreadable
            CertificateExpired: Client or server certificate expired
            HandshakeFailed: TLS or reachability failure
        """
        channel = cls(identity, build_client_context(identity))
        channel.handshake()
        return channel

    @property
    def address(self) -> str:
        return self.identity.address

    def _new_connection(self) -> http.client.HTTPSConnection:
        return http.client.HTTPSConnection(
            self.identity.host,
            self.identity.port,
            timeout=self.identity.timeout,
            context=self._context
        )

    def _acquire(self) -> http.client.HTTPSConnection:
        with self._pool_lock:
            if self._closed:
                raise RemoteUnavailable("Channel is closed", operation="remote")
            if self._idle:
                return self._idle.pop()
        return self._new_connection()

    def _release(self, conn: http.client.HTTPSConnection) -> None:
        with self._pool_lock:
            if not self._closed and len(self._idle) < MAX_IDLE_CONNECTIONS:
                self._idle.append(conn)
                return
        conn.close()

    def handshake(self) -> None:
        """Connect, complete TLS and round-trip /health."""
        try:
            status, _ = self._request("GET", "/health", operation="handshake")
        except (RemoteTimeout, RemoteUnavailable) as e:
            raise HandshakeFailed(f"Remote signer at {self.address} unreachable: {e.message}",
                                  operation="handshake") from e
        if status != 200:
            raise HandshakeFailed(f"Remote signer at {self.address} unhealthy (HTTP {status})",
                                  operation="handshake")
        logger.info(f"Connected to remote signer at {self.address}")

    def _request(self, method: str, path: str, payload: Optional[dict] = None,
                 operation: str = "remote") -> tuple[int, dict]:
        body = json.dumps(payload).encode() if payload is not None else None
        headers = {"Content-Type": "application/json"} if body is not None else {}
        conn = self._acquire()
        try:
            conn.request(method, path, body=body, headers=headers)
            response = conn.getresponse()
            raw = response.read()
        except TimeoutError as e:
            conn.close()
            raise RemoteTimeout(f"No response within {self.identity.timeout:g}s", operation=operation) from e
        except ssl.SSLError as e:
            conn.close()
            raise _tls_error(e, operation) from e
        except (http.client.HTTPException, OSError) as e:
            conn.close()
            raise RemoteUnavailable(f"Connection to {self.address} dropped: {e}", operation=operation) from e
        if response.will_close:
            conn.close()
        else:
            self._release(conn)
        try:
            data = json.loads(raw) if raw else {}
        except ValueError:
            raise RemoteRejected(f"Remote signer sent invalid JSON (HTTP {response.status})",
                                 operation=operation) from None
        if not isinstance(data, dict):
            raise RemoteRejected("Remote signer sent an unexpected response", operation=operation)
        return response.status, data

    # ============================================
    # Operations
    # ============================================

    def request_signature(self, public_key: bytes, signing_root: bytes) -> bytes:
        """
        Ask the remote signer to sign a root and verify the answer.

        Raises:
            RemoteTimeout: No answer within the identity timeout
            RemoteUnavailable: Connection dropped
            UnknownAccount: The signer does not own the key
            RemoteRejected: The signer refused or returned a bad signature
        """
        signing_root = check_signing_root(signing_root)
        account = short_key(public_key)
        status, data = self._request("POST", "/sign", {
            "public_key": public_key_hex(public_key),
            "signing_root": "0x" + signing_root.hex(),
        }, operation="sign")

        if status != 200:
            code = data.get("code", "UNKNOWN")
            error = data.get("error", "request refused")
            if code == "UNKNOWN_ACCOUNT":
                raise UnknownAccount("Remote signer does not own this account",
                                     operation="sign", account=account)
            raise RemoteRejected(f"Remote signer refused (HTTP {status}, {code}): {error}",
                                 operation="sign", account=account)

        try:
            text = data["signature"]
            signature = bytes.fromhex(text[2:] if text.startswith("0x") else text)
        except (KeyError, TypeError, AttributeError, ValueError):
            raise RemoteRejected("Remote signer returned a malformed signature",
                                 operation="sign", account=account) from None
        if not verify_signature(public_key, signing_root, signature):
            raise RemoteRejected("Remote signature does not verify against the public key",
                                 operation="sign", account=account)
        return signature

    def list_public_keys(self) -> list[bytes]:
        """Public keys the remote signer can sign for."""
        status, data = self._request("GET", "/accounts", operation="list-accounts")
        if status != 200:
            raise RemoteRejected(f"Remote signer refused account listing (HTTP {status}, "
                                 f"{data.get('code', 'UNKNOWN')})", operation="list-accounts")
        try:
            return [bytes.fromhex(k[2:] if k.startswith("0x") else k) for k in data["accounts"]]
        except (KeyError, TypeError, AttributeError, ValueError):
            raise RemoteRejected("Remote signer returned a malformed account list",
                                 operation="list-accounts") from None

    def reset(self) -> None:
        """Drop pooled connections; the next request reconnects."""
        with self._pool_lock:
            idle, self._idle = self._idle, []
        for conn in idle:
            conn.close()

    def close(self) -> None:
        with self._pool_lock:
            self._closed = True
            idle, self._idle = self._idle, []
        for conn in idle:
            conn.close()
        logger.debug(f"Closed channel to {self.address}")

    def __enter__(self) -> "RemoteSigningChannel":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
