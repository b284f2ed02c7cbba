"""Chain-entry persistence behind an injectable repository interface.

Purpose of this abstraction:
    The version chain manager never touches global state. It receives a
    `ChainRepository` and only calls `append`, `update`, `get`,
    `list_thread` and `list_session`.

Implementations:
    - `InMemoryChainRepository`: process-local dict, used by tests and the CLI.
    - `JsonChainRepository`: mirrors all entries to one JSON file after every
      write so a restarted process recovers its threads.

Concurrency:
    Writes are serialized with an `asyncio.Lock`. File writes run in a worker
    thread and replace the file atomically.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Protocol

from canvasrefine.core.models import ChainEntry


logger = logging.getLogger(__name__)


class ChainRepository(Protocol):
    async def append(self, entry: ChainEntry) -> None: ...

    async def update(self, entry: ChainEntry) -> None: ...

    async def get(self, entry_id: str) -> ChainEntry | None: ...

    async def list_thread(self, thread_id: str) -> list[ChainEntry]: ...

    async def list_session(self, session_id: str) -> list[ChainEntry]: ...


class InMemoryChainRepository:
    """Insertion-ordered in-memory store."""

    def __init__(self) -> None:
        self._entries: dict[str, ChainEntry] = {}
        self._lock = asyncio.Lock()

    async def append(self, entry: ChainEntry) -> None:
        async with self._lock:
            if entry.id in self._entries:
                raise ValueError(f"Chain entry already exists: {entry.id}")
            self._entries[entry.id] = entry
            await self._persist()

    async def update(self, entry: ChainEntry) -> None:
        async with self._lock:
            if entry.id not in self._entries:
                raise KeyError(entry.id)
            self._entries[entry.id] = entry
            await self._persist()

    async def get(self, entry_id: str) -> ChainEntry | None:
        return self._entries.get(entry_id)

    async def list_thread(self, thread_id: str) -> list[ChainEntry]:
        return [e for e in self._entries.values() if e.thread_id == thread_id]

    async def list_session(self, session_id: str) -> list[ChainEntry]:
        return [e for e in self._entries.values() if e.session_id == session_id]

    async def _persist(self) -> None:
        return None


class JsonChainRepository(InMemoryChainRepository):
    """In-memory repository mirrored to a JSON file.

    Side effects:
        - Reads `path` once at construction when it exists.
        - Rewrites `path` after every append/update.

    Failure handling:
        A corrupt file at startup is logged and treated as empty; the file is
        overwritten on the next write. Write failures propagate.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            entries = [ChainEntry.from_dict(item) for item in data.get("entries", [])]
        except (OSError, ValueError, KeyError, TypeError, AttributeError):
            logger.exception("Could not read chain store %s; starting empty", self.path)
            return
        self._entries = {entry.id: entry for entry in entries}
        logger.info("Loaded %d chain entries from %s", len(entries), self.path)

    async def _persist(self) -> None:
        snapshot = {"entries": [entry.to_dict() for entry in self._entries.values()]}
        await asyncio.to_thread(self._write, snapshot)

    def _write(self, snapshot: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)
