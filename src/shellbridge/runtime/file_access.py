"""Local file access used by the transfer engine."""

from __future__ import annotations

import asyncio
import os
import stat as stat_module
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class FileStat:
    """The subset of ``os.stat_result`` a transfer needs."""

    size: int
    mtime: int = 0
    mode: int = 0
    is_dir: bool = False


class FileAccess(Protocol):
    """Asynchronous file operations performed on behalf of a transfer."""

    async def exists(self, path: str) -> bool:
        ...

    async def stat(self, path: str) -> FileStat:
        ...

    async def open(self, path: str, mode: str) -> int:
        ...

    async def read(self, descriptor: int, length: int) -> bytes:
        ...

    async def write(self, descriptor: int, data: bytes) -> int:
        ...

    async def close(self, descriptor: int) -> None:
        ...


_OPEN_FLAGS = {
    "r": os.O_RDONLY,
    "w": os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
    "a": os.O_WRONLY | os.O_CREAT | os.O_APPEND,
}


class LocalFileAccess:
    """:class:`FileAccess` backed by ``os`` calls run in a worker thread."""

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(os.path.exists, path)

    async def stat(self, path: str) -> FileStat:
        result = await asyncio.to_thread(os.stat, path)
        return FileStat(
            size=result.st_size,
            mtime=int(result.st_mtime),
            mode=result.st_mode & 0o7777,
            is_dir=stat_module.S_ISDIR(result.st_mode),
        )

    async def open(self, path: str, mode: str) -> int:
        try:
            flags = _OPEN_FLAGS[mode]
        except KeyError:
            raise ValueError(f"unsupported open mode {mode!r}") from None
        flags |= getattr(os, "O_BINARY", 0)
        return await asyncio.to_thread(os.open, path, flags, 0o644)

    async def read(self, descriptor: int, length: int) -> bytes:
        return await asyncio.to_thread(os.read, descriptor, length)

    async def write(self, descriptor: int, data: bytes) -> int:
        view = memoryview(data)
        written = 0
        while written < len(view):
            written += await asyncio.to_thread(os.write, descriptor, view[written:])
        return written

    async def close(self, descriptor: int) -> None:
        await asyncio.to_thread(os.close, descriptor)


__all__ = ["FileAccess", "FileStat", "LocalFileAccess"]
