from __future__ import annotations

from typing import Protocol


class BlobStorePort(Protocol):
    """Minimal async filesystem used by the persistent cache.

    Paths are relative to the store root and use ``/`` separators.
    """

    async def create_dir(self, path: str) -> None:
        """Create a directory (and parents); no error if it exists."""

    async def read_file(self, path: str) -> bytes:
        """Return file contents. Raises FileNotFoundError when missing."""
        ...

    async def write_file(self, path: str, data: bytes) -> None:
        """Replace file contents."""

    async def delete(self, path: str) -> None:
        """Remove a file; missing files are ignored."""

    async def list_dir(self, path: str) -> list[str]:
        """Return entry names in a directory, or [] if it does not exist."""
        ...
