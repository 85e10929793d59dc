#!/usr/bin/env python3
"""Key Agent - In-memory registry of unlocked vault keys.

The agent is the only component that ever holds decrypted master keys. The
vault talks to it through a narrow encrypt/decrypt interface so the agent
can live in another process (see agent_daemon).
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

from . import crypto
from .errors import UnknownKeyError


class CryptoAlgorithm(Enum):
    """Encryption schemes the agent can apply with a resident key."""

    AES128_OPENSSL_KEY = "aes128-openssl-key"


@dataclass
class CryptoParams:
    """Algorithm selection passed with every encrypt/decrypt call."""

    algorithm: CryptoAlgorithm = CryptoAlgorithm.AES128_OPENSSL_KEY


class KeyFormat(Enum):
    AGILE_KEYCHAIN_KEY = "agile-keychain"


@dataclass
class Key:
    """A password-wrapped key as stored on disk (still encrypted)."""

    format: KeyFormat
    identifier: str
    data: str
    iterations: int
    validation: str


class KeyAgent:
    """Interface for key agents. All operations are coroutines."""

    async def add_key(self, key_id: str, key: bytes) -> None:
        raise NotImplementedError

    async def list_keys(self) -> List[str]:
        raise NotImplementedError

    async def forget_keys(self) -> None:
        raise NotImplementedError

    async def encrypt(self, key_id: str, plaintext: bytes, params: CryptoParams) -> bytes:
        raise NotImplementedError

    async def decrypt(self, key_id: str, ciphertext: bytes, params: CryptoParams) -> bytes:
        raise NotImplementedError


class SimpleKeyAgent(KeyAgent):
    """Key agent holding keys in a dict for the lifetime of the object."""

    def __init__(self):
        self.keys: Dict[str, bytes] = {}
        self.lock = threading.Lock()

    async def add_key(self, key_id: str, key: bytes) -> None:
        """Register ``key`` under ``key_id``, replacing any existing key."""
        if isinstance(key, str):
            key = key.encode("utf-8")
        with self.lock:
            self.keys[key_id] = bytes(key)

    async def list_keys(self) -> List[str]:
        with self.lock:
            return list(self.keys.keys())

    async def forget_keys(self) -> None:
        with self.lock:
            self.keys.clear()

    async def encrypt(self, key_id: str, plaintext: bytes, params: CryptoParams) -> bytes:
        """Encrypt ``plaintext`` with the resident key ``key_id``.

        Raises:
            UnknownKeyError: If no key with that id is resident
            ValueError: If ``params`` names an unsupported algorithm

        """
        key = self._get_key(key_id)
        _check_algorithm(params)
        return crypto.encrypt_item_data(key, plaintext)

    async def decrypt(self, key_id: str, ciphertext: bytes, params: CryptoParams) -> bytes:
        """Decrypt a ``Salted__`` blob with the resident key ``key_id``."""
        key = self._get_key(key_id)
        _check_algorithm(params)
        return crypto.decrypt_item_data(key, ciphertext)

    def _get_key(self, key_id: str) -> bytes:
        with self.lock:
            key = self.keys.get(key_id)
        if key is None:
            raise UnknownKeyError(key_id)
        return key


def _check_algorithm(params: CryptoParams) -> None:
    if params.algorithm is not CryptoAlgorithm.AES128_OPENSSL_KEY:
        raise ValueError(f"Unsupported algorithm: {params.algorithm}")
