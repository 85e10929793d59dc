#!/usr/bin/env python3
"""Crypto primitives for the Agile Keychain format.

Item content and wrapped master keys use AES-128-CBC in the salted stream
format written by ``openssl enc``: ``Salted__`` + 8-byte salt + ciphertext.
Master keys are wrapped with a PBKDF2-derived key; item content is keyed
from the unwrapped master key via OpenSSL's MD5 ``EVP_BytesToKey``.
"""

import uuid
from dataclasses import dataclass
from typing import Tuple, Union

import nacl.utils
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError, FormatError

# Taken from the 1Password v4 app for Mac (05/2014)
DEFAULT_VAULT_PASS_ITERATIONS = 80000

SALT_MARKER = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 16
BLOCK_SIZE = 16

BytesLike = Union[str, bytes]


@dataclass
class SaltedCipherText:
    """A ``Salted__`` blob split into its parts."""

    salt: bytes
    ciphertext: bytes


def _to_bytes(value: BytesLike) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def random_bytes(n: int) -> bytes:
    """Return ``n`` cryptographically secure random bytes."""
    return nacl.utils.random(n)


def new_uuid() -> str:
    """Generate a new item or key identifier (32 upper-case hex chars)."""
    return uuid.UUID(bytes=random_bytes(16), version=4).hex.upper()


def derive_key(password: BytesLike, salt: bytes, iterations: int) -> Tuple[bytes, bytes]:
    """Derive an AES-128 key and IV from a password using PBKDF2-HMAC-SHA1.

    Args:
        password: Master password
        salt: 8-byte salt stored in the key entry
        iterations: PBKDF2 work factor

    Returns:
        Tuple of (key, iv), 16 bytes each

    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA1(),
        length=KEY_SIZE * 2,
        salt=salt,
        iterations=iterations,
    )
    derived = kdf.derive(_to_bytes(password))
    return derived[:KEY_SIZE], derived[KEY_SIZE:]


def openssl_key(password: BytesLike, salt: bytes) -> Tuple[bytes, bytes]:
    """Derive key and IV the way ``openssl enc`` does (EVP_BytesToKey, MD5, 1 round)."""
    data = _to_bytes(password) + salt
    result = b""
    block = b""
    while len(result) < KEY_SIZE * 2:
        digest = hashes.Hash(hashes.MD5())
        digest.update(block + data)
        block = digest.finalize()
        result += block
    return result[:KEY_SIZE], result[KEY_SIZE:KEY_SIZE * 2]


def encrypt_legacy(key: bytes, iv: bytes, plaintext: BytesLike) -> bytes:
    """Encrypt with AES-128-CBC and PKCS#7 padding."""
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(_to_bytes(plaintext)) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def decrypt_legacy(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    """Decrypt AES-128-CBC data and strip PKCS#7 padding.

    Raises:
        DecryptionError: If the ciphertext is not block aligned or the
            padding is invalid (usually the wrong key)

    """
    if not ciphertext or len(ciphertext) % BLOCK_SIZE:
        raise DecryptionError(f"Ciphertext length {len(ciphertext)} is not a multiple of {BLOCK_SIZE}")

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError(f"Decryption failed: {e}") from e


def extract_salt_and_ciphertext(blob: bytes) -> SaltedCipherText:
    """Split a ``Salted__`` + salt + ciphertext blob.

    Raises:
        FormatError: If the marker is missing or the blob is too short

    """
    header_len = len(SALT_MARKER) + SALT_SIZE
    if len(blob) < header_len:
        raise FormatError(f"Salted blob too short ({len(blob)} bytes)")
    if not blob.startswith(SALT_MARKER):
        raise FormatError("Salted blob is missing the 'Salted__' marker")
    return SaltedCipherText(
        salt=blob[len(SALT_MARKER):header_len],
        ciphertext=blob[header_len:],
    )


def encrypt_item_data(password: BytesLike, plaintext: BytesLike) -> bytes:
    """Encrypt data in the salted stream format, keyed from ``password``.

    For item content ``password`` is the vault's unwrapped master key.
    """
    salt = random_bytes(SALT_SIZE)
    key, iv = openssl_key(password, salt)
    return SALT_MARKER + salt + encrypt_legacy(key, iv, plaintext)


def decrypt_item_data(password: BytesLike, blob: bytes) -> bytes:
    """Decrypt data produced by :func:`encrypt_item_data`."""
    salted = extract_salt_and_ciphertext(blob)
    key, iv = openssl_key(password, salted.salt)
    return decrypt_legacy(key, iv, salted.ciphertext)
