from __future__ import annotations

from typing import Any, Optional, Protocol


class VulnerabilityCachePort(Protocol):
    async def get(self, key: str, ttl_minutes: Optional[int] = None) -> Any | None:
        """Return the cached JSON value for key, or None on miss/expiry/forced refresh."""
        ...

    async def put(self, key: str, value: Any) -> None:
        """Store a JSON-serialisable value. Failures are logged, never raised."""

    async def clear(self, namespace: Optional[str] = None) -> int:
        """Delete entries of one namespace (or all) and return how many were removed."""
        ...
