#!/usr/bin/env python3
"""Key wrapping - protects a vault's master keys with the user's password.

Each entry in encryptionKeys.js holds the master key encrypted with a
PBKDF2-derived key (``data``) plus a validation blob. A wrong password does
not make AES-CBC fail reliably, it just yields garbage, so the unwrapped key
is used to decrypt the validation blob and the two results must match.
"""

import base64
import binascii
import hmac
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import crypto
from .errors import DecryptionError, FormatError, IncorrectPasswordError

# Only SL5 is used by current 1Password releases; SL3 entries are dead weight.
DEFAULT_SECURITY_LEVEL = "SL5"
LEGACY_SECURITY_LEVEL = "SL3"


@dataclass
class EncryptionKeyEntry:
    """One entry of the ``list`` in encryptionKeys.js."""

    identifier: str
    data: str
    validation: str
    iterations: int
    level: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "identifier": self.identifier,
            "iterations": self.iterations,
            "level": self.level,
            "validation": self.validation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptionKeyEntry":
        try:
            return cls(
                identifier=data["identifier"],
                data=data["data"],
                validation=data["validation"],
                iterations=int(data.get("iterations", 1000)),
                level=data.get("level", DEFAULT_SECURITY_LEVEL),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise FormatError(f"Invalid encryption key entry: {e}") from e


@dataclass
class WrappedKey:
    """Result of wrapping a raw key with a password."""

    data: str
    validation: str
    salt: bytes


@dataclass
class UnwrappedKey:
    identifier: str
    key: bytes


def _b64decode(value: str, field_name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise FormatError(f"Invalid base64 in key {field_name}") from e


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def encrypt_key(key: bytes, iv: bytes, raw_key: bytes) -> Dict[str, bytes]:
    """Encrypt ``raw_key`` with a derived key and build its validation blob.

    The validation blob is an independent encryption of the raw key (fresh
    salt) keyed from the raw key itself, as 1Password does.
    """
    return {
        "key": crypto.encrypt_legacy(key, iv, raw_key),
        "validation": crypto.encrypt_item_data(raw_key, raw_key),
    }


def decrypt_key(key: bytes, iv: bytes, encrypted_key: bytes, validation: bytes) -> bytes:
    """Decrypt a wrapped key and check it against its validation blob.

    Raises:
        IncorrectPasswordError: If the two decryptions disagree or either
            one fails to decrypt

    """
    try:
        candidate = crypto.decrypt_legacy(key, iv, encrypted_key)
        check = crypto.decrypt_item_data(candidate, validation)
    except DecryptionError as e:
        raise IncorrectPasswordError("Incorrect password") from e

    if not hmac.compare_digest(candidate, check):
        raise IncorrectPasswordError("Incorrect password")
    return candidate


def wrap_key(password: str, raw_key: bytes, iterations: int) -> WrappedKey:
    """Wrap ``raw_key`` with a key derived from ``password`` and a fresh salt."""
    salt = crypto.random_bytes(crypto.SALT_SIZE)
    key, iv = crypto.derive_key(password, salt, iterations)
    encrypted = encrypt_key(key, iv, raw_key)
    return WrappedKey(
        data=_b64encode(crypto.SALT_MARKER + salt + encrypted["key"]),
        validation=_b64encode(encrypted["validation"]),
        salt=salt,
    )


def unwrap_key(password: str, entry: EncryptionKeyEntry) -> bytes:
    """Recover the raw key from ``entry`` using ``password``.

    Raises:
        IncorrectPasswordError: If ``password`` is wrong
        FormatError: If the entry's blobs are malformed

    """
    salted = crypto.extract_salt_and_ciphertext(_b64decode(entry.data, "data"))
    validation = _b64decode(entry.validation, "validation")
    key, iv = crypto.derive_key(password, salted.salt, entry.iterations)
    return decrypt_key(key, iv, salted.ciphertext, validation)


def unwrap_keys(entries: List[EncryptionKeyEntry], password: str) -> List[UnwrappedKey]:
    """Unwrap every entry; the first wrong-password failure propagates."""
    return [UnwrappedKey(identifier=entry.identifier, key=unwrap_key(password, entry)) for entry in entries]


def rewrap_key(
    entry: EncryptionKeyEntry,
    old_password: str,
    new_password: str,
    iterations: Optional[int] = None
) -> EncryptionKeyEntry:
    """Re-encrypt the key in ``entry`` under ``new_password``.

    The identifier and level are kept so items keep resolving to the same
    key. ``iterations`` defaults to the entry's current work factor.
    """
    raw_key = unwrap_key(old_password, entry)
    new_iterations = iterations or entry.iterations
    wrapped = wrap_key(new_password, raw_key, new_iterations)
    return EncryptionKeyEntry(
        identifier=entry.identifier,
        data=wrapped.data,
        validation=wrapped.validation,
        iterations=new_iterations,
        level=entry.level,
    )
