from __future__ import annotations

from typing import Protocol, Sequence

from ..domain.models import Dependency, Vulnerability


class VulnerabilitySourcePort(Protocol):
    async def get_batch_vulnerabilities(
        self,
        dependencies: Sequence[Dependency],
        bypass_cache: bool = False,
    ) -> dict[str, list[Vulnerability]]:
        """Return vulnerabilities per dependency name; every input name gets an entry."""
        ...

    def optimize_concurrency(self, total_dependencies: int) -> None:
        """Retune request concurrency for a workload of the given size."""

    async def get_vulnerabilities(self, name: str, version: str) -> list[Vulnerability]:
        results = await self.get_batch_vulnerabilities([Dependency(name=name, version=version)])
        return results.get(name, [])
