"""agile-vault - Agile Keychain (.agilekeychain) vault engine.

Reads and writes 1Password Agile Keychain vaults: password-wrapped master
keys, per-item AES encryption and the contents.js index.
"""

__version__ = "0.1.0"

from .errors import (
    AgentError,
    ConflictError,
    DecryptionError,
    FormatError,
    IncorrectPasswordError,
    MissingKeyError,
    NotFoundError,
    StateError,
    UnknownKeyError,
    VaultError,
)
from .items import ChangeSource, Item, ItemContent, ItemTypes, ListItemsOptions
from .key_agent import CryptoAlgorithm, CryptoParams, KeyAgent, SimpleKeyAgent
from .vault import Vault
from .vfs import FileSystem, LocalFileSystem, MemoryFileSystem

__all__ = [
    "AgentError",
    "ChangeSource",
    "ConflictError",
    "CryptoAlgorithm",
    "CryptoParams",
    "DecryptionError",
    "FileSystem",
    "FormatError",
    "IncorrectPasswordError",
    "Item",
    "ItemContent",
    "ItemTypes",
    "KeyAgent",
    "ListItemsOptions",
    "LocalFileSystem",
    "MemoryFileSystem",
    "MissingKeyError",
    "NotFoundError",
    "SimpleKeyAgent",
    "StateError",
    "UnknownKeyError",
    "Vault",
    "VaultError",
]
