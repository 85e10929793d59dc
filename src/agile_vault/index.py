#!/usr/bin/env python3
"""Index update coalescer for contents.js.

Many item saves may be in flight at once but they all have to land in the
single contents.js file. Saves drop their item into a pending map (keyed by
uuid, so repeated saves of one item collapse) and a single flush task at a
time folds everything pending into the file with a revision-conditioned
write. Updates arriving during a flush are picked up by the next one.
"""

import asyncio
from typing import Dict, Optional, Set

from . import codec
from .items import Item
from .vfs import FileSystem


class IndexUpdateQueue:
    """Coalesces index updates into as few contents.js writes as possible."""

    def __init__(self, fs: FileSystem, contents_path: str):
        self.fs = fs
        self.contents_path = contents_path
        self.pending: Dict[str, Item] = {}
        self.flush_count = 0
        self._flush: Optional[asyncio.Future] = None
        self._captured: Set[str] = set()

    def is_idle(self) -> bool:
        """True when nothing is pending and no flush is running."""
        return not self.pending and not self._flush_running()

    def _flush_running(self) -> bool:
        return self._flush is not None and not self._flush.done()

    async def enqueue(self, item: Item) -> None:
        """Queue ``item``'s overview and wait until it has been written.

        Raises:
            ConflictError: If contents.js changed underneath the flush that
                carried this update. The update is not retried and is
                dropped from the queue.

        """
        self.pending[item.uuid] = item
        await self.wait_flushed(item.uuid)

    async def wait_flushed(self, uuid: Optional[str] = None) -> None:
        """Drive flushes until the pending map is empty.

        A failed flush is only reported to callers whose update it carried,
        or to every caller when ``uuid`` is None. Updates queued after the
        failed flush captured the pending map are written by the next one.
        """
        while True:
            if self._flush_running():
                flush, captured = self._flush, self._captured
                try:
                    await flush
                except Exception:
                    if uuid is None or (uuid in captured and uuid not in self.pending):
                        raise
                continue
            if not self.pending:
                return
            self._captured = set()
            self._flush = asyncio.ensure_future(self._save_contents_file(self._captured))

    async def _save_contents_file(self, captured: Set[str]) -> None:
        updated_items = list(self.pending.values())
        captured.update(self.pending)
        self.pending.clear()

        stat = await self.fs.stat(self.contents_path)
        rows = codec.parse_index(await self.fs.read(self.contents_path))
        for item in updated_items:
            codec.update_index_row(rows, item)

        self.flush_count += 1
        await self.fs.write(
            self.contents_path,
            codec.dump_index(rows),
            parent_revision=stat.revision,
        )
