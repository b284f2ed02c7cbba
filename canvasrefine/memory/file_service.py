"""File persistence primitives used by the artifact store.

`FileService` is the seam between storage policy (naming, namespacing,
placeholders) and the host filesystem. `LocalFileService` runs blocking
filesystem calls through `asyncio.to_thread` so the event loop is never
blocked by disk I/O.
"""

import asyncio
import os
from pathlib import Path
from typing import Protocol


class FileService(Protocol):
    async def ensure_directory(self, path: Path) -> None: ...

    async def write_bytes(self, path: Path, data: bytes) -> None: ...

    async def read_bytes(self, path: Path) -> bytes: ...

    async def read_list(self, path: Path, patterns: tuple[str, ...]) -> list[Path]: ...

    async def delete_file(self, path: Path) -> bool: ...


class LocalFileService:
    """`FileService` backed by the local filesystem."""

    async def ensure_directory(self, path: Path) -> None:
        await asyncio.to_thread(os.makedirs, path, exist_ok=True)

    async def write_bytes(self, path: Path, data: bytes) -> None:
        await asyncio.to_thread(self._write_atomic, path, data)

    async def read_bytes(self, path: Path) -> bytes:
        return await asyncio.to_thread(Path(path).read_bytes)

    async def read_list(self, path: Path, patterns: tuple[str, ...]) -> list[Path]:
        def _list() -> list[Path]:
            if not Path(path).is_dir():
                return []
            found = set()
            for pattern in patterns:
                found.update(p for p in Path(path).glob(pattern) if p.is_file())
            return sorted(found)

        return await asyncio.to_thread(_list)

    async def delete_file(self, path: Path) -> bool:
        """Delete a file; returns `False` when it was already absent."""
        def _delete() -> bool:
            try:
                os.remove(path)
            except FileNotFoundError:
                return False
            return True

        return await asyncio.to_thread(_delete)

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        tmp_path = Path(f"{path}.tmp")
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
