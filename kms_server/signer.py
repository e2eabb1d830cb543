"""kms_server/signer.py

Request signing with an Ethereum wallet key (EIP-191 personal_sign).

The signed message binds the request method, path, a unix timestamp and the
SHA-256 digest of the body:

    KMS:RequestAuth:<METHOD>:<path?query>:<timestamp>:<sha256(body) hex>

The signature, timestamp and signer address travel in the
X-Request-Signature / X-Request-Timestamp / X-Request-Wallet headers.
A receiver rebuilds the message and recovers the wallet with
``recover_request_signer``.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Callable, Optional

import requests
from eth_account import Account
from eth_account.messages import encode_defunct

from config import SIGNATURE_HEADER, SIGNATURE_TIMESTAMP_HEADER, SIGNATURE_WALLET_HEADER

logger = logging.getLogger("kms-server.signer")


def signing_message(method: str, path: str, timestamp: str, body: bytes) -> str:
    digest = hashlib.sha256(body).hexdigest()
    return f"KMS:RequestAuth:{method.upper()}:{path}:{timestamp}:{digest}"


def _drain_body(body) -> bytes:
    if body is None:
        return b""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    # Stream body: reading it consumes it.
    data = body.read()
    return data.encode("utf-8") if isinstance(data, str) else data


class WalletSigner:
    """Signs prepared requests with a secp256k1 private key."""

    def __init__(self, private_key, *, clock: Callable[[], float] = time.time):
        self._account = Account.from_key(private_key)
        self._clock = clock

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, request: requests.PreparedRequest) -> None:
        body = _drain_body(request.body)
        timestamp = str(int(self._clock()))
        message = signing_message(request.method or "GET", request.path_url, timestamp, body)
        signed = self._account.sign_message(encode_defunct(text=message))

        request.headers[SIGNATURE_HEADER] = "0x" + bytes(signed.signature).hex()
        request.headers[SIGNATURE_TIMESTAMP_HEADER] = timestamp
        request.headers[SIGNATURE_WALLET_HEADER] = self._account.address


def recover_request_signer(
    method: str,
    path: str,
    timestamp: str,
    body: bytes,
    signature: str,
) -> Optional[str]:
    """Recover the wallet address that signed the request, or None if it cannot be recovered."""
    if not signature or not timestamp:
        return None
    try:
        message = signing_message(method, path, timestamp, body)
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as exc:
        logger.warning(f"Request signature recovery failed: {exc}")
        return None
