"""
Services package - Network services for the validator wallet.

Contains:
- RemoteSigningChannel: mutual-TLS client for a remote signer
- SigningService: sign request handling for a keymanager
- RemoteSignerServer: reference remote signer (HTTPS)
"""

from .channel import RemoteSigningChannel, build_client_context, check_certificate_validity
from .server import RemoteSignerServer, build_server_context
from .signing import SigningService

__all__ = [
    "RemoteSigningChannel",
    "build_client_context",
    "check_certificate_validity",
    "RemoteSignerServer",
    "build_server_context",
    "SigningService",
]
