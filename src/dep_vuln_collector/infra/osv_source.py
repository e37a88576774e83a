from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from pydantic import ValidationError

from ..config.urls import get_osv_querybatch_path, get_osv_vuln_path
from ..core.domain.enums import Severity, VulnerabilitySource
from ..core.domain.errors import ClassifiedError
from ..core.domain.models import CvssCandidate, Dependency, Vulnerability
from ..core.ports.cache_port import VulnerabilityCachePort
from ..core.ports.vulnerability_source_port import VulnerabilitySourcePort
from ..shared.codec import dump_vulnerabilities, load_vulnerabilities
from ..shared.dates import parse_timestamp
from .background import BackgroundTasks
from .cvss_scorer import CvssScorer
from .http_client import HttpClient
from .persistent_cache import build_key
from .schemas import (
    OsvAffected,
    OsvQuery,
    OsvQueryBatchRequest,
    OsvQueryBatchResponse,
    OsvQueryPackage,
    OsvVulnerability,
)

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = VulnerabilitySource.OSV.value
ECOSYSTEM = "npm"
QUERYBATCH_LIMIT = 1000
DETAIL_TIMEOUT_SECONDS = 10.0
_RANGE_TYPES = {"SEMVER", "ECOSYSTEM"}


def format_affected_ranges(affected: Optional[Sequence[OsvAffected]]) -> str:
    """Render OSV ranges as a semver range string joined with `` || ``.

    Only SEMVER/ECOSYSTEM ranges count. Each ``introduced`` is paired with the
    following ``fixed`` (``>=X <Y``) or ``last_affected`` (``>=X <=Y``); an
    unpaired ``introduced`` becomes ``>=X`` and a lone ``fixed`` ``<X``.
    Returns ``*`` when nothing usable is present.
    """
    ranges: list[str] = []
    for aff in affected or []:
        for rng in aff.ranges or []:
            if rng.type.upper() not in _RANGE_TYPES:
                continue
            introduced: Optional[str] = None
            for event in rng.events:
                if event.introduced is not None:
                    if introduced is not None:
                        ranges.append(f">={introduced}")
                    introduced = event.introduced
                if event.fixed is not None:
                    ranges.append(f">={introduced} <{event.fixed}" if introduced is not None else f"<{event.fixed}")
                    introduced = None
                elif event.last_affected is not None:
                    ranges.append(
                        f">={introduced} <={event.last_affected}" if introduced is not None else f"<={event.last_affected}"
                    )
                    introduced = None
            if introduced is not None:
                ranges.append(f">={introduced}")
    return " || ".join(ranges) if ranges else "*"


class OsvVulnerabilitySource(VulnerabilitySourcePort):
    """Two-phase OSV lookup: batched ID discovery, then per-ID detail hydration.

    Phase one sends up to 1000 packages per ``POST /v1/querybatch`` and only
    learns vulnerability IDs. Phase two fetches each unseen ID with
    ``GET /v1/vulns/{id}``; converted records are kept in memory for the life
    of the instance. Per-package results are written to the persistent cache
    in the background.
    """

    def __init__(
        self,
        http_client: HttpClient,
        cache: VulnerabilityCachePort,
        scorer: CvssScorer,
        background: Optional[BackgroundTasks] = None,
        *,
        batch_size: int = QUERYBATCH_LIMIT,
    ) -> None:
        self._http = http_client
        self._cache = cache
        self._scorer = scorer
        self._background = background or BackgroundTasks()
        self._batch_size = max(1, min(batch_size, QUERYBATCH_LIMIT))
        self._details: dict[str, Vulnerability] = {}
        self._inflight: dict[str, asyncio.Task[None]] = {}

    @property
    def detail_cache_size(self) -> int:
        return len(self._details)

    def optimize_concurrency(self, total_dependencies: int) -> None:
        self._http.tune_concurrency(total_dependencies)

    async def get_batch_vulnerabilities(
        self,
        dependencies: Sequence[Dependency],
        bypass_cache: bool = False,
    ) -> dict[str, list[Vulnerability]]:
        if not dependencies:
            return {}

        if bypass_cache:
            logger.info("OSV: bypassing caches")
            self._details.clear()
            self._scorer.clear()
            await self._cache.clear(CACHE_NAMESPACE)

        results: dict[str, list[Vulnerability]] = {d.name: [] for d in dependencies}
        to_fetch: list[Dependency] = []
        for dep in dependencies:
            cached = None if bypass_cache else await self._cached(dep)
            if cached is None:
                to_fetch.append(dep)
            else:
                results[dep.name] = cached

        logger.info(f"OSV: {len(dependencies) - len(to_fetch)} cached, {len(to_fetch)} to fetch")
        if not to_fetch:
            return results

        chunks = [to_fetch[i:i + self._batch_size] for i in range(0, len(to_fetch), self._batch_size)]
        outcomes = await asyncio.gather(*(self._fetch_chunk(c) for c in chunks))
        for chunk, outcome in zip(chunks, outcomes):
            if outcome is None:
                continue
            for dep in chunk:
                vulns = outcome.get(dep.name, [])
                results[dep.name] = vulns
                key = build_key(CACHE_NAMESPACE, dep.name, dep.version)
                self._background.spawn(self._cache.put(key, dump_vulnerabilities(vulns)), description=key)
        return results

    async def _cached(self, dep: Dependency) -> Optional[list[Vulnerability]]:
        data = await self._cache.get(build_key(CACHE_NAMESPACE, dep.name, dep.version))
        if data is None:
            return None
        return load_vulnerabilities(data)

    async def _fetch_chunk(self, chunk: Sequence[Dependency]) -> Optional[dict[str, list[Vulnerability]]]:
        request = OsvQueryBatchRequest(
            queries=[
                OsvQuery(package=OsvQueryPackage(name=d.name, ecosystem=ECOSYSTEM), version=d.version)
                for d in chunk
            ]
        )
        try:
            data = await self._http.post_json(get_osv_querybatch_path(), request.model_dump())
            response = OsvQueryBatchResponse.model_validate(data)
        except (ClassifiedError, ValidationError) as e:
            logger.error(f"OSV querybatch failed for {len(chunk)} packages: {e}")
            return None

        if len(response.results) != len(chunk):
            logger.error(
                f"OSV querybatch returned {len(response.results)} results for {len(chunk)} queries; ignoring batch"
            )
            return None

        ids: list[str] = []
        seen: set[str] = set()
        for result in response.results:
            for ref in result.vulns:
                if ref.id not in seen:
                    seen.add(ref.id)
                    ids.append(ref.id)
        await self._hydrate(ids)

        out: dict[str, list[Vulnerability]] = {}
        for dep, result in zip(chunk, response.results):
            out[dep.name] = [self._details[ref.id] for ref in result.vulns if ref.id in self._details]
        return out

    async def _hydrate(self, ids: Sequence[str]) -> None:
        missing = [i for i in ids if i not in self._details]
        if not missing:
            return
        logger.debug(f"OSV: fetching {len(missing)} vulnerability details ({len(ids) - len(missing)} in memory)")
        tasks = [self._inflight.get(i) or self._start_detail(i) for i in missing]
        await asyncio.gather(*(asyncio.shield(t) for t in tasks))

    def _start_detail(self, vuln_id: str) -> asyncio.Task[None]:
        # concurrent chunks that share an ID wait on the same request
        task = asyncio.create_task(self._fetch_detail(vuln_id))
        self._inflight[vuln_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(vuln_id, None))
        return task

    async def _fetch_detail(self, vuln_id: str) -> None:
        try:
            data = await self._http.get_json(get_osv_vuln_path(vuln_id), timeout=DETAIL_TIMEOUT_SECONDS)
            osv = OsvVulnerability.model_validate(data)
        except (ClassifiedError, ValidationError) as e:
            logger.warning(f"OSV detail fetch failed for {vuln_id}: {e}")
            return
        self._details[vuln_id] = self._to_vulnerability(osv)

    def _to_vulnerability(self, osv: OsvVulnerability) -> Vulnerability:
        vuln_id = next((a for a in osv.aliases or [] if a.startswith("CVE-")), osv.id)

        candidates = [CvssCandidate(vector=str(s.score), type_hint=s.type) for s in osv.severity or []]
        selection = self._scorer.select_best(candidates)
        score = selection.score if selection else None

        db = osv.database_specific
        severity = Severity.normalize(score, db.severity if db else None)

        return Vulnerability(
            id=vuln_id,
            title=osv.summary or "",
            description=osv.details or "",
            severity=severity,
            cvss_score=score,
            cvss_version=selection.version if selection else None,
            vector_string=selection.vector_string if selection else None,
            affected_versions=format_affected_ranges(osv.affected),
            references=tuple(r.url for r in osv.references or []),
            cwe_ids=tuple(db.cwe_ids or []) if db else (),
            published_date=parse_timestamp(osv.published),
            last_modified_date=parse_timestamp(osv.modified),
            sources=(VulnerabilitySource.OSV,),
        )
