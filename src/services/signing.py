"""
Signing Service - Handles remote sign requests for a keymanager.

Validates requests, maps wallet errors to stable codes, and signs.
"""

import hashlib
import logging
import threading
from typing import Optional

from wallet.errors import AccountBusy, Locked, UnknownAccount, WalletError
from wallet.keys import SIGNING_ROOT_SIZE, normalize_public_key, public_key_hex, short_key

logger = logging.getLogger(__name__)

# Signature cache limits (for idempotency)
SIGNATURE_CACHE_MAX_SIZE = 1000
SIGNATURE_CACHE_PRUNE_COUNT = 100


def _parse_hex(value, name: str, size: Optional[int] = None) -> bytes:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a hex string")
    text = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        raw = bytes.fromhex(text)
    except ValueError:
        raise ValueError(f"{name} is not valid hex") from None
    if size is not None and len(raw) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(raw)}")
    return raw


class SigningService:
    """
    Serves sign requests on behalf of a keymanager.

    Idempotency:
    - Same public key + same signing root = retry -> return cached result
    - The cache is bounded; the oldest entries are pruned first
    """

    def __init__(self, keymanager):
        self._keymanager = keymanager
        # Idempotency cache: cache_key -> cached_result
        self._signature_cache: dict[str, dict] = {}
        self._cache_lock = threading.Lock()
        self.signed = 0
        self.rejected = 0

    def _make_cache_key(self, public_key: bytes, signing_root: bytes) -> str:
        return hashlib.sha256(public_key + signing_root).hexdigest()

    def _cache_result(self, cache_key: str, result: dict) -> dict:
        """Cache a result for idempotency and return it."""
        with self._cache_lock:
            self._signature_cache[cache_key] = result
            # Limit cache size to prevent memory growth
            if len(self._signature_cache) > SIGNATURE_CACHE_MAX_SIZE:
                keys_to_remove = list(self._signature_cache.keys())[:SIGNATURE_CACHE_PRUNE_COUNT]
                for key in keys_to_remove:
                    del self._signature_cache[key]
        return result

    def _check_can_sign(self, public_key: bytes) -> None:
        """Raise Locked or UnknownAccount if the keymanager would refuse to sign."""
        if not self._keymanager.is_unlocked:
            raise Locked("Wallet is locked", operation="sign")
        if public_key not in self._keymanager.list_accounts():
            raise UnknownAccount("Unknown account", operation="sign", account=short_key(public_key))

    @property
    def cache_size(self) -> int:
        return len(self._signature_cache)

    def handle_accounts(self) -> dict:
        """List the keymanager's public keys."""
        try:
            accounts = [public_key_hex(pk) for pk in self._keymanager.list_accounts()]
        except WalletError as e:
            logger.error(f"Account listing failed: {e}")
            return {"status": "error", "error": e.message, "code": "SIGNING_ERROR"}
        return {"status": "ok", "accounts": accounts}

    def handle_sign_request(self, request_data: dict) -> dict:
        """
        Handle a sign request.

        Args:
            request_data: {"public_key": "0x..", "signing_root": "0x.."}

        Returns:
            {"status": "signed", "signature": "0x.."} or an error dict
            with a stable code.
        """
        if not isinstance(request_data, dict):
            return {"status": "error", "error": "Request must be a JSON object", "code": "INVALID_REQUEST"}
        try:
            public_key = normalize_public_key(_parse_hex(request_data.get("public_key"), "public_key"))
            signing_root = _parse_hex(request_data.get("signing_root"), "signing_root", SIGNING_ROOT_SIZE)
        except ValueError as e:
            return {"status": "error", "error": str(e), "code": "INVALID_REQUEST"}

        account = short_key(public_key)
        cache_key = self._make_cache_key(public_key, signing_root)
        try:
            with self._cache_lock:
                cached = self._signature_cache.get(cache_key)
            if cached is not None:
                # A cached signature is only served while the account could sign now
                self._check_can_sign(public_key)
                logger.info(f"Returning cached signature for {account}")
                return cached
            signature = self._keymanager.sign(public_key, signing_root)
        except UnknownAccount:
            self.rejected += 1
            logger.warning(f"Sign request for unknown account {account}")
            return {"status": "error", "error": "Unknown account", "code": "UNKNOWN_ACCOUNT"}
        except Locked:
            self.rejected += 1
            return {"status": "error", "error": "Wallet is locked", "code": "WALLET_LOCKED"}
        except AccountBusy:
            self.rejected += 1
            return {"status": "error", "error": "Account is busy, retry later", "code": "ACCOUNT_BUSY"}
        except WalletError as e:
            self.rejected += 1
            logger.error(f"Signing failed for {account}: {e}")
            return {"status": "error", "error": e.message, "code": "SIGNING_ERROR"}

        self.signed += 1
        logger.info(f"Signed root for {account}")
        return self._cache_result(cache_key, {"status": "signed", "signature": "0x" + signature.hex()})
