"""
=============================================================================
Secret Locks (secret_lock.py)
=============================================================================

A secret lock wraps and unwraps master key material before it reaches the
key store.  The lock backend is selected at startup by the
``--secret-lock-type`` tag:

  - ``local``: AES-256-GCM with a key read from a local key file.
  - ``aws``:   AWS KMS Encrypt / Decrypt against the key named by a key URI.
  - ``none``:  pass-through, for development only.

All locks expose the same two methods::

    encrypt(key_uri: str, plaintext: bytes) -> bytes
    decrypt(key_uri: str, ciphertext: bytes) -> bytes

``key_uri`` identifies the wrapped key and is bound into the ciphertext as
associated data, so a blob cannot be unwrapped under a different key URI.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

import boto3
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import config

logger = logging.getLogger("kms-server.secret_lock")

_NONCE_SIZE = 12
_TAG_SIZE = 16

_URLSAFE_B64_RE = re.compile(rb"^[A-Za-z0-9_-]*={0,2}$")

_AWS_KEY_ARN_RE = re.compile(
    r"^arn:(?P<partition>aws[a-z-]*):kms:(?P<region>[a-z0-9-]+):"
    r"(?P<account>\d{12}):(?P<key>(?:key|alias)/[A-Za-z0-9/_+=,.@-]+)$"
)


# =============================================================================
# Key material
# =============================================================================

def load_local_key(path: str) -> bytes:
    """
    Read the local secret lock key from *path*.

    The file holds the URL-safe base64 encoding (with padding) of a
    SECRET_LOCK_KEY_SIZE-byte key.  Surrounding whitespace is ignored.

    Raises OSError if the file cannot be read and ValueError if its content
    is not a valid key.
    """
    with open(path, "rb") as f:
        content = f.read().strip()

    if not _URLSAFE_B64_RE.match(content):
        raise ValueError(f"key file {path} is not URL-safe base64 encoded")
    try:
        key = base64.urlsafe_b64decode(content)
    except binascii.Error as exc:
        raise ValueError(f"key file {path} is not URL-safe base64 encoded: {exc}") from exc

    if len(key) != config.SECRET_LOCK_KEY_SIZE:
        raise ValueError(
            f"key file {path} must hold a {config.SECRET_LOCK_KEY_SIZE}-byte key, "
            f"got {len(key)} bytes"
        )
    return key


@dataclass(frozen=True)
class AWSKeyURI:
    uri: str
    arn: str
    partition: str
    region: str
    account_id: str
    key_id: str


def parse_aws_key_uri(uri: str) -> AWSKeyURI:
    """Parse ``aws-kms://arn:aws:kms:<region>:<account>:key/<id>``; ValueError if malformed."""
    if not uri or not uri.startswith(config.AWS_KEY_URI_PREFIX):
        raise ValueError(
            f"invalid key URI {uri!r}: must start with {config.AWS_KEY_URI_PREFIX!r}"
        )
    arn = uri[len(config.AWS_KEY_URI_PREFIX):]
    match = _AWS_KEY_ARN_RE.match(arn)
    if match is None:
        raise ValueError(f"invalid key URI {uri!r}: not a valid AWS KMS key ARN")
    return AWSKeyURI(
        uri=uri,
        arn=arn,
        partition=match.group("partition"),
        region=match.group("region"),
        account_id=match.group("account"),
        key_id=match.group("key"),
    )


# =============================================================================
# Locks
# =============================================================================

class NoopSecretLock:
    """Pass-through lock.  Never use outside development."""

    def encrypt(self, key_uri: str, plaintext: bytes) -> bytes:
        return bytes(plaintext)

    def decrypt(self, key_uri: str, ciphertext: bytes) -> bytes:
        return bytes(ciphertext)


class LocalSecretLock:
    """
    AES-256-GCM lock keyed by the local key file.

    Ciphertext layout: nonce (12 bytes) || AES-GCM ciphertext + tag.
    """

    def __init__(self, key: bytes):
        if len(key) != config.SECRET_LOCK_KEY_SIZE:
            raise ValueError(
                f"local secret lock key must be {config.SECRET_LOCK_KEY_SIZE} bytes"
            )
        self._aead = AESGCM(key)

    def encrypt(self, key_uri: str, plaintext: bytes) -> bytes:
        nonce = os.urandom(_NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext, key_uri.encode("utf-8"))

    def decrypt(self, key_uri: str, ciphertext: bytes) -> bytes:
        if len(ciphertext) < _NONCE_SIZE + _TAG_SIZE:
            raise ValueError("ciphertext too short")
        nonce, sealed = ciphertext[:_NONCE_SIZE], ciphertext[_NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, sealed, key_uri.encode("utf-8"))
        except InvalidTag as exc:
            raise ValueError("secret lock decryption failed") from exc


class AWSSecretLock:
    """
    Lock backed by an AWS KMS key.

    The boto3 client is created from the key URI's region and the configured
    static credentials unless a client is passed in.
    """

    def __init__(
        self,
        key_uri: AWSKeyURI,
        access_key: str,
        secret_key: str,
        *,
        endpoint: Optional[str] = None,
        client=None,
    ):
        self.key_uri = key_uri
        if client is None:
            client = boto3.client(
                "kms",
                region_name=key_uri.region,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                endpoint_url=endpoint or None,
            )
        self._client = client

    def encrypt(self, key_uri: str, plaintext: bytes) -> bytes:
        resp = self._client.encrypt(
            KeyId=self.key_uri.arn,
            Plaintext=plaintext,
            EncryptionContext={"keyURI": key_uri},
        )
        return resp["CiphertextBlob"]

    def decrypt(self, key_uri: str, ciphertext: bytes) -> bytes:
        resp = self._client.decrypt(
            KeyId=self.key_uri.arn,
            CiphertextBlob=ciphertext,
            EncryptionContext={"keyURI": key_uri},
        )
        return resp["Plaintext"]


def create_secret_lock(params):
    """
    Build the secret lock selected by ``params.secret_lock_type``.

    *params* is a resolved ``parameters.ServerParameters``.  Raises ValueError
    for an unknown lock type.
    """
    lock_type = params.secret_lock_type
    if lock_type == config.SECRET_LOCK_TYPE_LOCAL:
        return LocalSecretLock(params.secret_lock_key)
    if lock_type == config.SECRET_LOCK_TYPE_AWS:
        key_uri = parse_aws_key_uri(params.secret_lock_aws_key_uri)
        logger.info(f"Using AWS KMS secret lock in region {key_uri.region}")
        return AWSSecretLock(
            key_uri,
            params.secret_lock_aws_access_key,
            params.secret_lock_aws_secret_key,
            endpoint=params.secret_lock_aws_endpoint,
        )
    if lock_type == config.SECRET_LOCK_TYPE_NONE:
        logger.warning("Secret lock disabled: master keys will be stored unwrapped")
        return NoopSecretLock()
    raise ValueError(
        f"unsupported secret lock type {lock_type!r}: "
        f"must be one of {', '.join(config.SECRET_LOCK_TYPES)}"
    )
