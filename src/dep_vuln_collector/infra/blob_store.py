from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from platformdirs import user_cache_dir

from ..core.ports.blob_store_port import BlobStorePort

logger = logging.getLogger(__name__)


def default_cache_dir() -> Path:
    return Path(user_cache_dir("dep-vuln-collector")) / "vulnerability-cache"


class LocalBlobStore(BlobStorePort):
    """Blob store on the local filesystem; blocking calls run in worker threads."""

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self._base = Path(base_dir) if base_dir else default_cache_dir()
        logger.debug(f"Blob store rooted at {self._base}")

    @property
    def base_dir(self) -> Path:
        return self._base

    def _resolve(self, path: str) -> Path:
        return self._base / path if path else self._base

    async def create_dir(self, path: str) -> None:
        target = self._resolve(path)
        await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)

    async def read_file(self, path: str) -> bytes:
        return await asyncio.to_thread(self._resolve(path).read_bytes)

    async def write_file(self, path: str, data: bytes) -> None:
        await asyncio.to_thread(_write_atomic, self._resolve(path), data)

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._resolve(path).unlink, missing_ok=True)

    async def list_dir(self, path: str) -> list[str]:
        return await asyncio.to_thread(_list_names, self._resolve(path))


def _write_atomic(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _list_names(directory: Path) -> list[str]:
    if not directory.is_dir():
        return []
    return sorted(entry.name for entry in directory.iterdir())
