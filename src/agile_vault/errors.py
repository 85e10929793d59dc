#!/usr/bin/env python3
"""Error taxonomy shared by the vault engine, key agent and filesystem layer."""


class VaultError(Exception):
    """Base class for all agile_vault errors."""


class FormatError(VaultError):
    """Malformed on-disk JSON or salted-blob framing."""


class DecryptionError(FormatError):
    """Ciphertext could not be decrypted (bad padding or truncated data)."""


class IncorrectPasswordError(VaultError):
    """Master password failed the validation check during key unwrap."""


class UnknownKeyError(VaultError):
    """Encrypt/decrypt requested for a key id the agent does not hold."""

    def __init__(self, key_id: str):
        super().__init__(f"No such key: {key_id}")
        self.key_id = key_id


class MissingKeyError(VaultError):
    """No resident key matches an item's security level."""

    def __init__(self, level: str):
        super().__init__(f"No key {level} found")
        self.level = level


class ConflictError(VaultError):
    """A write was conditioned on a revision that is no longer current."""


class NotFoundError(VaultError):
    """A vault file does not exist."""

    def __init__(self, path: str):
        super().__init__(f"File not found: {path}")
        self.path = path


class StateError(VaultError):
    """Operation not valid in the vault's current state."""


class AgentError(VaultError):
    """The key agent daemon could not be reached or failed internally."""
