"""
AES codecs for encrypted webhook bodies.

Tencent Meeting: AES-256-CBC keyed by the EncodingAESKey (base64 without
its trailing "="), IV = first 16 bytes of the key, PKCS7 padding.

Lark: AES-256-CBC keyed by SHA-256 of the encrypt key, IV = first 16 bytes
of the decoded ciphertext, PKCS7 padding.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from app.core.exceptions import WebhookConfigError, WebhookDecryptionError

logger = logging.getLogger(__name__)

KEY_SIZE = 32
BLOCK_SIZE = 16


def decode_encoding_key(encoding_key: str) -> bytes:
    """
    Recover the raw 32-byte AES key from a Tencent EncodingAESKey.

    The console shows the key without base64 padding, so "=" is appended
    until the length is a multiple of four before decoding.
    """
    if not encoding_key or encoding_key == "__MISSING__":
        raise WebhookConfigError("TENCENT_ENCODING_AES_KEY")

    padded = encoding_key + "=" * (-len(encoding_key) % 4)
    try:
        key = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise WebhookConfigError("TENCENT_ENCODING_AES_KEY", f"EncodingAESKey is not base64: {e}") from e

    if len(key) != KEY_SIZE:
        raise WebhookConfigError(
            "TENCENT_ENCODING_AES_KEY",
            f"EncodingAESKey decodes to {len(key)} bytes, expected {KEY_SIZE}",
        )
    return key


def _cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(BLOCK_SIZE * 8).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    if not ciphertext or len(ciphertext) % BLOCK_SIZE:
        raise ValueError(f"ciphertext length {len(ciphertext)} is not a positive multiple of {BLOCK_SIZE}")
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(BLOCK_SIZE * 8).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


def aes_encrypt(plaintext: str, encoding_key: str) -> str:
    """Encrypt a UTF-8 string the way Tencent Meeting does; returns base64."""
    key = decode_encoding_key(encoding_key)
    ciphertext = _cbc_encrypt(key, key[:BLOCK_SIZE], plaintext.encode("utf-8"))
    return base64.b64encode(ciphertext).decode("ascii")


def aes_decrypt(ciphertext_b64: str, encoding_key: str) -> str:
    """
    Decrypt a base64 Tencent Meeting ciphertext to a UTF-8 string.

    Raises:
        WebhookConfigError: the EncodingAESKey is missing or malformed
        WebhookDecryptionError: the ciphertext cannot be decrypted
    """
    key = decode_encoding_key(encoding_key)

    if not ciphertext_b64:
        raise WebhookDecryptionError("empty ciphertext")

    try:
        ciphertext = base64.b64decode(ciphertext_b64, validate=True)
        plaintext = _cbc_decrypt(key, key[:BLOCK_SIZE], ciphertext)
        return plaintext.decode("utf-8")
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        logger.error(f"Tencent webhook decryption failed: {type(e).__name__}: {e}")
        raise WebhookDecryptionError(str(e)) from e


def _lark_key(encrypt_key: str) -> bytes:
    if not encrypt_key:
        raise WebhookConfigError("LARK_ENCRYPT_KEY")
    return hashlib.sha256(encrypt_key.encode("utf-8")).digest()


def lark_encrypt(plaintext: str, encrypt_key: str, iv: bytes | None = None) -> str:
    """Encrypt a Lark event body; the random IV is prefixed to the ciphertext."""
    iv = iv or os.urandom(BLOCK_SIZE)
    ciphertext = _cbc_encrypt(_lark_key(encrypt_key), iv, plaintext.encode("utf-8"))
    return base64.b64encode(iv + ciphertext).decode("ascii")


def lark_decrypt(encrypt_b64: str, encrypt_key: str) -> str:
    key = _lark_key(encrypt_key)
    if not encrypt_b64:
        raise WebhookDecryptionError("empty ciphertext")
    try:
        raw = base64.b64decode(encrypt_b64, validate=True)
        plaintext = _cbc_decrypt(key, raw[:BLOCK_SIZE], raw[BLOCK_SIZE:])
        return plaintext.decode("utf-8")
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        logger.error(f"Lark webhook decryption failed: {type(e).__name__}: {e}")
        raise WebhookDecryptionError(str(e)) from e
