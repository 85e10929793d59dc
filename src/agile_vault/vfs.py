#!/usr/bin/env python3
"""Filesystem abstraction used to read and write vault files.

Paths are ``/``-separated strings relative to the filesystem root. Every
file has a revision string; writes may be conditioned on the revision the
caller last saw so concurrent writers cannot clobber each other.
"""

import asyncio
import hashlib
import os
import posixpath
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from .errors import ConflictError, NotFoundError


@dataclass
class FileStat:
    path: str
    revision: str
    size: int


class FileSystem:
    """Interface for vault storage backends. All operations are coroutines."""

    async def read(self, path: str) -> str:
        raise NotImplementedError

    async def write(self, path: str, content: str, parent_revision: Optional[str] = None) -> None:
        raise NotImplementedError

    async def stat(self, path: str) -> FileStat:
        raise NotImplementedError

    async def mkpath(self, path: str) -> None:
        raise NotImplementedError

    async def exists(self, path: str) -> bool:
        try:
            await self.stat(path)
            return True
        except NotFoundError:
            return False


def _revision(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


class LocalFileSystem(FileSystem):
    """Files on local disk below ``root``.

    Blocking calls run in the default executor. The revision of a file is
    the SHA-1 of its bytes, so any change to the content changes it.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _full_path(self, path: str) -> Path:
        return self.root / path.lstrip("/")

    async def read(self, path: str) -> str:
        return await asyncio.to_thread(self._read_sync, path)

    def _read_sync(self, path: str) -> str:
        try:
            return self._full_path(path).read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise NotFoundError(path) from e

    async def write(self, path: str, content: str, parent_revision: Optional[str] = None) -> None:
        await asyncio.to_thread(self._write_sync, path, content, parent_revision)

    def _write_sync(self, path: str, content: str, parent_revision: Optional[str]) -> None:
        full_path = self._full_path(path)

        if parent_revision is not None:
            try:
                current = _revision(full_path.read_bytes())
            except FileNotFoundError:
                current = None
            if current != parent_revision:
                raise ConflictError(f"{path} was modified (expected revision {parent_revision}, found {current})")

        full_path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a temp file and rename so readers never see a partial file
        fd, tmp_name = tempfile.mkstemp(dir=full_path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, full_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    async def stat(self, path: str) -> FileStat:
        return await asyncio.to_thread(self._stat_sync, path)

    def _stat_sync(self, path: str) -> FileStat:
        try:
            data = self._full_path(path).read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError(path) from e
        return FileStat(path=path, revision=_revision(data), size=len(data))

    async def mkpath(self, path: str) -> None:
        await asyncio.to_thread(self._full_path(path).mkdir, parents=True, exist_ok=True)


class MemoryFileSystem(FileSystem):
    """In-memory filesystem with integer revisions.

    Every operation yields to the event loop once so that concurrent
    callers interleave the way they would against real I/O.
    """

    def __init__(self):
        self.files: Dict[str, Tuple[str, int]] = {}
        self.dirs = set()
        self.write_count = 0
        self._next_revision = 1

    @staticmethod
    def _normalize(path: str) -> str:
        return posixpath.normpath(path.lstrip("/"))

    async def read(self, path: str) -> str:
        await asyncio.sleep(0)
        entry = self.files.get(self._normalize(path))
        if entry is None:
            raise NotFoundError(path)
        return entry[0]

    async def write(self, path: str, content: str, parent_revision: Optional[str] = None) -> None:
        await asyncio.sleep(0)
        key = self._normalize(path)
        if parent_revision is not None:
            entry = self.files.get(key)
            current = str(entry[1]) if entry else None
            if current != parent_revision:
                raise ConflictError(f"{path} was modified (expected revision {parent_revision}, found {current})")

        self.files[key] = (content, self._next_revision)
        self._next_revision += 1
        self.write_count += 1

    async def stat(self, path: str) -> FileStat:
        await asyncio.sleep(0)
        entry = self.files.get(self._normalize(path))
        if entry is None:
            raise NotFoundError(path)
        return FileStat(path=path, revision=str(entry[1]), size=len(entry[0]))

    async def mkpath(self, path: str) -> None:
        await asyncio.sleep(0)
        parts = self._normalize(path).split("/")
        for i in range(1, len(parts) + 1):
            self.dirs.add("/".join(parts[:i]))
