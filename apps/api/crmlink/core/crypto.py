from __future__ import annotations

import base64
import binascii
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from crmlink.core.config import get_settings

_NONCE_BYTES = 12


class EncryptionKeyError(RuntimeError):
    pass


def _cipher() -> AESGCM:
    raw = get_settings().ENCRYPTION_KEY_BASE64
    try:
        key = base64.b64decode(raw, validate=True)
    except binascii.Error as e:
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must be valid base64") from e
    if len(key) != 32:
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must decode to 32 bytes (AES-256)")
    return AESGCM(key)


def encrypt_text(*, value: str, aad: bytes) -> str:
    """Encrypt a string to base64(nonce || ciphertext) so it fits a text column.

    `aad` binds the blob to where it is stored; decrypting it under any other
    `aad` fails.
    """
    nonce = os.urandom(_NONCE_BYTES)
    sealed = _cipher().encrypt(nonce, value.encode("utf-8"), aad)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_text(*, value: str, aad: bytes) -> str:
    blob = base64.b64decode(value.encode("ascii"), validate=True)
    if len(blob) <= _NONCE_BYTES:
        raise ValueError("Encrypted value is too short")
    plaintext = _cipher().decrypt(blob[:_NONCE_BYTES], blob[_NONCE_BYTES:], aad)
    return plaintext.decode("utf-8")
