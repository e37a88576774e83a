from __future__ import annotations

from typing import Optional

from ..ports.cache_port import VulnerabilityCachePort


class ClearCacheUseCase:
    def __init__(self, cache: VulnerabilityCachePort) -> None:
        self._cache = cache

    async def execute(self, namespace: Optional[str] = None) -> int:
        return await self._cache.clear(namespace)
