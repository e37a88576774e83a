from __future__ import annotations

import logging
from typing import Sequence

from ..domain.models import Dependency, Vulnerability
from ..ports.vulnerability_source_port import VulnerabilitySourcePort

logger = logging.getLogger(__name__)


class ScanDependenciesUseCase:
    def __init__(self, source: VulnerabilitySourcePort) -> None:
        self._source = source

    async def execute(
        self,
        dependencies: Sequence[Dependency],
        *,
        bypass_cache: bool = False,
    ) -> dict[str, list[Vulnerability]]:
        if not dependencies:
            return {}
        self._source.optimize_concurrency(len(dependencies))
        logger.info(f"Scanning {len(dependencies)} dependencies (bypass_cache={bypass_cache})")
        results = await self._source.get_batch_vulnerabilities(dependencies, bypass_cache)
        found = sum(len(v) for v in results.values())
        logger.info(f"Scan finished: {found} vulnerabilities across {len(results)} packages")
        return results
