#!/usr/bin/env python3
"""Vault engine for Agile Keychain (.agilekeychain) vaults.

Layout under ``<vault>.agilekeychain/data/default/``:

    encryptionKeys.js   password-wrapped master keys
    .password.hint      plain-text password hint
    contents.js         index of item overviews, readable without a password
    <uuid>.1password    one file per item, content encrypted
"""

import asyncio
import posixpath
from typing import List, Optional

from . import codec, crypto, key_wrap
from .audit import AuditLogger
from .errors import IncorrectPasswordError, MissingKeyError, StateError, UnknownKeyError
from .events import EventStream
from .index import IndexUpdateQueue
from .items import ChangeSource, Item, ItemContent, ItemTypes, ListItemsOptions
from .key_agent import CryptoParams, Key, KeyAgent, KeyFormat, SimpleKeyAgent
from .key_wrap import DEFAULT_SECURITY_LEVEL, LEGACY_SECURITY_LEVEL, EncryptionKeyEntry
from .vfs import FileSystem

VAULT_EXTENSION = ".agilekeychain"
DATA_FOLDER = "data/default"
MASTER_KEY_SIZE = 1024


class Vault:
    """An Agile Keychain vault stored at ``path`` in ``fs``.

    Decrypted master keys never live in the vault object itself; they are
    handed to ``agent`` on unlock and used through its encrypt/decrypt calls.
    """

    def __init__(
        self,
        fs: FileSystem,
        path: str,
        agent: Optional[KeyAgent] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.fs = fs
        self.path = path
        self.agent = agent or SimpleKeyAgent()
        self.audit_logger = audit_logger
        self._keys: Optional[List[EncryptionKeyEntry]] = None

        self.on_item_updated: EventStream[Item] = EventStream()
        self.on_unlock: EventStream[None] = EventStream()
        self.on_lock: EventStream[None] = EventStream()

        self.index_queue = IndexUpdateQueue(fs, self.contents_file_path())

    # -- paths ------------------------------------------------------------

    @property
    def vault_path(self) -> str:
        return self.path

    def data_folder_path(self) -> str:
        return posixpath.join(self.path, DATA_FOLDER)

    def contents_file_path(self) -> str:
        return posixpath.join(self.data_folder_path(), "contents.js")

    def keys_file_path(self) -> str:
        return posixpath.join(self.data_folder_path(), "encryptionKeys.js")

    def hint_file_path(self) -> str:
        return posixpath.join(self.data_folder_path(), ".password.hint")

    def item_path(self, uuid: str) -> str:
        return posixpath.join(self.data_folder_path(), f"{uuid}.1password")

    def _audit(self, result: str, action: str, target: str, reason: Optional[str] = None) -> None:
        if self.audit_logger:
            self.audit_logger.log_event("vault", result, action, target, reason)

    # -- creation ---------------------------------------------------------

    @classmethod
    async def create_vault(
        cls,
        fs: FileSystem,
        path: str,
        password: str,
        hint: str,
        iterations: int = crypto.DEFAULT_VAULT_PASS_ITERATIONS,
        agent: Optional[KeyAgent] = None,
        audit_logger: Optional[AuditLogger] = None
    ) -> "Vault":
        """Initialize a new, empty vault protected by ``password``.

        Raises:
            StateError: If a vault already exists at ``path``

        """
        if not path.endswith(VAULT_EXTENSION):
            path += VAULT_EXTENSION

        vault = cls(fs, path, agent, audit_logger)
        if await fs.exists(vault.keys_file_path()) or await fs.exists(vault.contents_file_path()):
            raise StateError(f"A vault already exists at {path}")

        master_key = crypto.random_bytes(MASTER_KEY_SIZE)
        wrapped = key_wrap.wrap_key(password, master_key, iterations)
        entry = EncryptionKeyEntry(
            identifier=crypto.new_uuid(),
            data=wrapped.data,
            validation=wrapped.validation,
            iterations=iterations,
            level=DEFAULT_SECURITY_LEVEL,
        )

        # Key file and index go last so an interrupted create leaves no
        # half-readable vault. A failure between the two is not rolled back.
        await fs.mkpath(vault.data_folder_path())
        await vault._write_keys([entry], hint)
        await fs.write(vault.contents_file_path(), "[]")

        vault._audit("ALLOWED", "CREATE", path)
        return vault

    # -- keys -------------------------------------------------------------

    async def _get_keys(self) -> List[EncryptionKeyEntry]:
        if self._keys is None:
            self._keys = await self._load_keys()
        return self._keys

    async def _load_keys(self) -> List[EncryptionKeyEntry]:
        entries = codec.parse_key_list(await self.fs.read(self.keys_file_path()))
        # 1Password v4 writes SL5 and SL3 entries but SL3 is unused;
        # skipping it halves the unlock cost.
        return [entry for entry in entries if entry.level != LEGACY_SECURITY_LEVEL]

    async def _write_keys(self, entries: List[EncryptionKeyEntry], hint: str) -> None:
        await asyncio.gather(
            self.fs.write(self.keys_file_path(), codec.dump_key_list(entries)),
            self.fs.write(self.hint_file_path(), hint),
        )

    async def list_keys(self) -> List[Key]:
        """Return the on-disk (still wrapped) keys."""
        return [
            Key(
                format=KeyFormat.AGILE_KEYCHAIN_KEY,
                identifier=entry.identifier,
                data=entry.data,
                iterations=entry.iterations,
                validation=entry.validation,
            )
            for entry in await self._get_keys()
        ]

    async def save_keys(self, keys: List[Key], hint: str) -> None:
        raise StateError("Agile Keychain keys can only be replaced via change_password()")

    async def _key_for_level(self, level: str) -> EncryptionKeyEntry:
        for entry in await self._get_keys():
            if entry.level == level:
                return entry
        raise MissingKeyError(level)

    # -- lock state -------------------------------------------------------

    async def unlock(self, password: str) -> None:
        """Unlock the vault; required before item content can be decrypted.

        Raises:
            IncorrectPasswordError: If ``password`` is wrong

        """
        entries = await self._get_keys()
        try:
            unwrapped = key_wrap.unwrap_keys(entries, password)
        except IncorrectPasswordError as e:
            self._audit("DENIED", "UNLOCK", self.path, str(e))
            raise

        for key in unwrapped:
            await self.agent.add_key(key.identifier, key.key)

        self._audit("ALLOWED", "UNLOCK", self.path)
        self.on_unlock.publish(None)

    async def lock(self) -> None:
        """Discard the decrypted master keys held by the agent."""
        await self.agent.forget_keys()
        self._audit("ALLOWED", "LOCK", self.path)
        self.on_lock.publish(None)

    async def is_locked(self) -> bool:
        """True unless every on-disk key is resident in the agent."""
        resident = set(await self.agent.list_keys())
        entries = await self._get_keys()
        return any(entry.identifier not in resident for entry in entries)

    # -- item content -----------------------------------------------------

    async def encrypt_item_data(self, level: str, data: bytes) -> bytes:
        entry = await self._key_for_level(level)
        try:
            return await self.agent.encrypt(entry.identifier, data, CryptoParams())
        except UnknownKeyError as e:
            raise MissingKeyError(level) from e

    async def decrypt_item_data(self, level: str, data: bytes) -> bytes:
        entry = await self._key_for_level(level)
        try:
            return await self.agent.decrypt(entry.identifier, data, CryptoParams())
        except UnknownKeyError as e:
            raise MissingKeyError(level) from e

    async def get_raw_decrypted_data(self, item: Item) -> str:
        """Return the decrypted content JSON of ``item`` as stored on disk."""
        data = codec.parse_json(await self.fs.read(self.item_path(item.uuid)), f"{item.uuid}.1password")
        plaintext = await self.decrypt_item_data(
            codec.item_security_level(data),
            codec.item_encrypted_data(data),
        )
        return plaintext.decode("utf-8")

    async def get_content(self, item: Item) -> ItemContent:
        """Decrypt and parse the content of ``item``.

        Raises:
            MissingKeyError: If the vault is locked or has no key for the
                item's security level

        """
        raw = await self.get_raw_decrypted_data(item)
        return codec.from_keychain_content(codec.parse_json(raw, f"content of {item.uuid}"))

    # -- items ------------------------------------------------------------

    async def load_item(self, uuid: str) -> Item:
        """Load an item's overview and metadata. Content stays encrypted."""
        text = await self.fs.read(self.item_path(uuid))
        return codec.from_keychain_item(codec.parse_json(text, f"{uuid}.1password"))

    async def save_item(self, item: Item, source: ChangeSource = ChangeSource.USER) -> None:
        """Encrypt and write ``item`` and update the index.

        The item file write and the index update run concurrently;
        ``on_item_updated`` fires once both have completed.
        """
        if source is not ChangeSource.SYNC:
            item.update_timestamps()

        content = item.content
        if content is None:
            if await self.fs.exists(self.item_path(item.uuid)):
                content = await self.get_content(item)
            else:
                content = ItemContent()
            item.set_content(content)
        item.update_overview_from_content(content)

        await asyncio.gather(
            self._write_item_file(item, content),
            self.index_queue.enqueue(item),
        )

        self._audit("ALLOWED", "SAVE", item.uuid)
        self.on_item_updated.publish(item)

    async def _write_item_file(self, item: Item, content: ItemContent) -> None:
        content_json = codec.dump_compact(codec.to_keychain_content(content))
        encrypted = await self.encrypt_item_data(DEFAULT_SECURITY_LEVEL, content_json.encode("utf-8"))
        item_json = codec.dump_compact(codec.to_keychain_item(item, encrypted))
        await self.fs.write(self.item_path(item.uuid), item_json)

    async def flush_index(self) -> None:
        """Wait until every queued index update has been written."""
        await self.index_queue.wait_flushed()

    async def trash_item(self, item: Item, trash: bool = True) -> None:
        item.trashed = trash
        await self.save_item(item)

    async def remove_item(self, item: Item) -> None:
        """Replace ``item`` with a tombstone so the deletion syncs."""
        item.type_name = ItemTypes.TOMBSTONE
        item.title = "Unnamed"
        item.trashed = True
        item.locations = []
        item.folder_uuid = None
        item.fave_index = None
        item.open_contents = None
        item.set_content(ItemContent())
        await self.save_item(item)

    async def list_items(self, options: Optional[ListItemsOptions] = None) -> List[Item]:
        """Return overview items from the contents.js index.

        Only uuid, type, title, primary location, update time, folder and
        trashed flag are filled in; use load_item() for the rest. Tombstones
        are skipped unless ``options.include_tombstones`` is set.
        """
        options = options or ListItemsOptions()
        rows = codec.parse_index(await self.fs.read(self.contents_file_path()))

        items = []
        for row in rows:
            item = codec.item_from_index_row(row)
            if item.is_tombstone() and not options.include_tombstones:
                continue
            items.append(item)
        return items

    # -- passwords --------------------------------------------------------

    async def change_password(
        self,
        old_password: str,
        new_password: str,
        new_hint: str,
        iterations: Optional[int] = None
    ) -> None:
        """Re-wrap the master keys with ``new_password``.

        Item content is untouched. ``iterations`` defaults to each key's
        current work factor.

        Raises:
            StateError: If the vault is locked
            IncorrectPasswordError: If ``old_password`` is wrong

        """
        if await self.is_locked():
            raise StateError("Vault must be unlocked before changing the password")

        entries = await self._get_keys()
        try:
            new_entries = [
                key_wrap.rewrap_key(entry, old_password, new_password, iterations)
                for entry in entries
            ]
        except IncorrectPasswordError as e:
            self._audit("DENIED", "CHANGE_PASSWORD", self.path, str(e))
            raise

        self._keys = None
        await self._write_keys(new_entries, new_hint)
        self._audit("ALLOWED", "CHANGE_PASSWORD", self.path)

    async def password_hint(self) -> str:
        return await self.fs.read(self.hint_file_path())

    async def clear(self) -> None:
        raise StateError("Primary vault does not support being cleared")
