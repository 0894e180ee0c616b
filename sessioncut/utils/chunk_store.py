from __future__ import annotations

import asyncio
import logging
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)

CHUNK_STORE_DIR = os.getenv("CHUNK_STORE_DIR", "/tmp/sessioncut/chunks")
CHUNK_FILENAME = "chunk_{index:06d}.webm"


def _chunk_index(path: Path) -> int:
    # chunk_000042.webm -> 42; the zero padding widens past six digits
    return int(path.stem.removeprefix("chunk_"))


class ChunkStore(ABC):
    """Persistence boundary for recorded media chunks, keyed by clip id."""

    @abstractmethod
    async def append(self, clip_id: str, index: int, data: bytes) -> None:
        ...

    @abstractmethod
    async def read_all(self, clip_id: str) -> bytes:
        """All chunks of a clip concatenated in index order."""

    @abstractmethod
    async def delete(self, clip_id: str) -> None:
        ...

    @abstractmethod
    async def list_ids(self) -> list[str]:
        ...


class InMemoryChunkStore(ChunkStore):
    def __init__(self):
        self._chunks: dict[str, dict[int, bytes]] = {}

    async def append(self, clip_id: str, index: int, data: bytes) -> None:
        self._chunks.setdefault(clip_id, {})[index] = bytes(data)

    async def read_all(self, clip_id: str) -> bytes:
        chunks = self._chunks.get(clip_id, {})
        return b"".join(chunks[idx] for idx in sorted(chunks))

    async def delete(self, clip_id: str) -> None:
        self._chunks.pop(clip_id, None)

    async def list_ids(self) -> list[str]:
        return sorted(self._chunks)

    def chunk_count(self, clip_id: str) -> int:
        return len(self._chunks.get(clip_id, {}))


class FileChunkStore(ChunkStore):
    """
    Stores each chunk as its own file under ``<root>/<clip_id>/``.

    Blocking file I/O runs on worker threads so chunk writes never stall the
    capture loop.
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root or CHUNK_STORE_DIR)
        self.root.mkdir(parents=True, exist_ok=True)

    def _clip_dir(self, clip_id: str) -> Path:
        if not clip_id or "/" in clip_id or "\\" in clip_id or clip_id in {".", ".."}:
            raise ValueError(f"Invalid clip id: {clip_id!r}")
        return self.root / clip_id

    def _chunk_files(self, clip_id: str) -> list[Path]:
        clip_dir = self._clip_dir(clip_id)
        if not clip_dir.exists():
            return []
        return sorted(clip_dir.glob("chunk_*.webm"), key=_chunk_index)

    def _write_chunk(self, clip_id: str, index: int, data: bytes) -> None:
        clip_dir = self._clip_dir(clip_id)
        clip_dir.mkdir(parents=True, exist_ok=True)
        (clip_dir / CHUNK_FILENAME.format(index=index)).write_bytes(data)

    def _read_chunks(self, clip_id: str) -> bytes:
        return b"".join(path.read_bytes() for path in self._chunk_files(clip_id))

    async def append(self, clip_id: str, index: int, data: bytes) -> None:
        await asyncio.to_thread(self._write_chunk, clip_id, index, bytes(data))

    async def read_all(self, clip_id: str) -> bytes:
        return await asyncio.to_thread(self._read_chunks, clip_id)

    async def delete(self, clip_id: str) -> None:
        clip_dir = self._clip_dir(clip_id)
        await asyncio.to_thread(shutil.rmtree, clip_dir, True)
        logger.debug("Deleted chunks for clip %s", clip_id)

    async def list_ids(self) -> list[str]:
        def _list() -> list[str]:
            if not self.root.exists():
                return []
            return sorted(p.name for p in self.root.iterdir() if p.is_dir())

        return await asyncio.to_thread(_list)
