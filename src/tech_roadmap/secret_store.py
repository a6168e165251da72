"""Authenticated encryption for datasource credentials.

Secrets (Azure DevOps personal access tokens) are stored as
``base64(nonce).base64(tag).base64(ciphertext)`` produced by AES-256-GCM.
The key is the SHA-256 digest of the master secret from
:func:`tech_roadmap.config.get_master_secret`.
"""

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tech_roadmap.config import Config, get_master_secret
from tech_roadmap.exceptions import AuthenticationFailure, InvalidSecretPayload

NONCE_BYTES = 12
TAG_BYTES = 16


def _derive_key(config: Config | None) -> bytes:
    return hashlib.sha256(get_master_secret(config).encode("utf-8")).digest()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _decode_segment(segment: str) -> bytes:
    try:
        data = base64.b64decode(segment, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidSecretPayload("Invalid secret payload.") from e
    # Altered padding bits decode to the same bytes, so compare canonical forms
    if _b64(data) != segment:
        raise AuthenticationFailure("Stored secret failed integrity check.")
    return data


def encrypt_secret(plaintext: str, config: Config | None = None) -> str:
    """Encrypt a secret. Two calls with the same input give different output.

    Raises:
        ConfigurationError: If no master secret is configured
    """
    key = _derive_key(config)
    nonce = os.urandom(NONCE_BYTES)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return ".".join([_b64(nonce), _b64(tag), _b64(ciphertext)])


def decrypt_secret(payload: str, config: Config | None = None) -> str:
    """Decrypt a value produced by :func:`encrypt_secret`.

    Raises:
        ConfigurationError: If no master secret is configured
        InvalidSecretPayload: If the payload is not three base64 segments
        AuthenticationFailure: If the payload was tampered with or the key differs
    """
    parts = (payload or "").split(".")
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise InvalidSecretPayload("Invalid secret payload.")
    nonce, tag, ciphertext = (_decode_segment(part) for part in parts)
    if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
        raise AuthenticationFailure("Stored secret failed integrity check.")

    key = _derive_key(config)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as e:
        raise AuthenticationFailure("Stored secret failed integrity check.") from e
    return plaintext.decode("utf-8")
