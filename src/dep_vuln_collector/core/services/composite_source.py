from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from ..domain.models import Dependency, Vulnerability
from ..ports.vulnerability_source_port import VulnerabilitySourcePort

logger = logging.getLogger(__name__)


class CompositeVulnerabilitySource(VulnerabilitySourcePort):
    """Query every configured source concurrently and concatenate the results.

    Records from different providers are kept side by side (no de-duplication);
    each carries its provider in ``sources``. A failing source is logged and
    recorded in ``last_errors`` while the others still contribute. Only when
    every source failed is the first failure re-raised.
    """

    def __init__(self, sources: Sequence[VulnerabilitySourcePort]) -> None:
        self._sources = tuple(sources)
        self.last_errors: list[Exception] = []
        logger.debug(f"Initialized CompositeVulnerabilitySource with {len(self._sources)} sources")

    @property
    def sources(self) -> tuple[VulnerabilitySourcePort, ...]:
        return self._sources

    def optimize_concurrency(self, total_dependencies: int) -> None:
        for source in self._sources:
            source.optimize_concurrency(total_dependencies)

    async def get_batch_vulnerabilities(
        self,
        dependencies: Sequence[Dependency],
        bypass_cache: bool = False,
    ) -> dict[str, list[Vulnerability]]:
        self.last_errors = []
        if not dependencies:
            return {}

        outcomes = await asyncio.gather(
            *(s.get_batch_vulnerabilities(dependencies, bypass_cache) for s in self._sources),
            return_exceptions=True,
        )

        merged: dict[str, list[Vulnerability]] = {d.name: [] for d in dependencies}
        for source, outcome in zip(self._sources, outcomes):
            source_name = source.__class__.__name__
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning(f"{source_name} failed: {outcome}")
                self.last_errors.append(outcome)
                continue
            for name, vulns in outcome.items():
                merged.setdefault(name, []).extend(vulns)

        if self._sources and len(self.last_errors) == len(self._sources):
            raise self.last_errors[0]
        return merged
