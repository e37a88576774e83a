from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional, Sequence
from urllib.parse import parse_qs, quote, urlsplit

from pydantic import TypeAdapter, ValidationError

from ..config.urls import get_github_advisories_path
from ..core.domain.enums import Severity, VulnerabilitySource
from ..core.domain.errors import ClassifiedError, ErrorKind
from ..core.domain.models import CvssCandidate, Dependency, Vulnerability
from ..core.ports.cache_port import VulnerabilityCachePort
from ..core.ports.vulnerability_source_port import VulnerabilitySourcePort
from ..shared.codec import dump_vulnerabilities, load_vulnerabilities
from ..shared.dates import parse_timestamp
from .background import BackgroundTasks
from .cvss_scorer import CvssScorer
from .http_client import HttpClient
from .persistent_cache import build_key
from .schemas import GhAdvisoryVulnerability, GhFirstPatchedVersion, GhReference, GitHubAdvisory

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = VulnerabilitySource.GITHUB.value
ECOSYSTEM = "npm"
MAX_BATCH_SIZE = 500
MAX_AFFECTS_LENGTH = 8000
MAX_PAGES = 10
PER_PAGE = 100

_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="([^"]+)"')
_ADVISORY_LIST = TypeAdapter(list[GitHubAdvisory])


def affects_token(dep: Dependency) -> str:
    return f"{quote(dep.name, safe='')}@{dep.version}"


def create_batches(
    dependencies: Sequence[Dependency],
    *,
    max_size: int = MAX_BATCH_SIZE,
    max_length: int = MAX_AFFECTS_LENGTH,
) -> list[list[Dependency]]:
    """Group dependencies so each batch has at most ``max_size`` entries and an
    ``affects`` value of at most ``max_length`` characters (each entry counted
    with its separating comma)."""
    batches: list[list[Dependency]] = []
    current: list[Dependency] = []
    length = 0
    for dep in dependencies:
        cost = len(affects_token(dep)) + 1
        if current and (len(current) >= max_size or length + cost > max_length):
            batches.append(current)
            current, length = [], 0
        current.append(dep)
        length += cost
    if current:
        batches.append(current)
    return batches


def parse_link_header(header: Optional[str]) -> dict[str, str]:
    """Return pagination cursors by relation (``next``, ``prev``...) from a Link header.

    The cursor is the ``after`` (or ``before``) query parameter of each link.
    """
    cursors: dict[str, str] = {}
    if not header:
        return cursors
    for url, rel in _LINK_RE.findall(header):
        params = parse_qs(urlsplit(url).query)
        cursor = (params.get("after") or params.get("before") or [None])[0]
        if cursor:
            cursors[rel] = cursor
    return cursors


class GitHubAdvisorySource(VulnerabilitySourcePort):
    """GitHub global advisory lookup with URL-length batching and split-on-failure.

    A batch that fails recoverably is halved and each half retried, down to
    single packages (which then yield no results). Authentication or quota
    failures trip a per-instance circuit breaker: the failing call raises, and
    every later call returns empty results without touching cache or network.
    """

    def __init__(
        self,
        http_client: HttpClient,
        cache: VulnerabilityCachePort,
        scorer: CvssScorer,
        background: Optional[BackgroundTasks] = None,
    ) -> None:
        self._http = http_client
        self._cache = cache
        self._scorer = scorer
        self._background = background or BackgroundTasks()
        self._rate_limited = False

    @property
    def is_rate_limited(self) -> bool:
        return self._rate_limited

    def optimize_concurrency(self, total_dependencies: int) -> None:
        self._http.tune_concurrency(total_dependencies)

    def update_token(self, token: str) -> None:
        """Swap the bearer token and re-arm the circuit breaker."""
        self._http.set_bearer_token(token)
        self._rate_limited = False
        logger.info("GitHub token updated")

    def clear_token(self) -> None:
        self._http.clear_bearer_token()
        logger.info("GitHub token cleared; using anonymous access")

    async def get_batch_vulnerabilities(
        self,
        dependencies: Sequence[Dependency],
        bypass_cache: bool = False,
    ) -> dict[str, list[Vulnerability]]:
        if not dependencies:
            return {}
        results: dict[str, list[Vulnerability]] = {d.name: [] for d in dependencies}
        if self._rate_limited:
            logger.warning("GitHub advisory lookups disabled after a rate-limit/auth failure; returning empty results")
            return results

        if bypass_cache:
            logger.info("GitHub: bypassing caches")
            self._scorer.clear()
            await self._cache.clear(CACHE_NAMESPACE)

        to_fetch: list[Dependency] = []
        for dep in dependencies:
            cached = None if bypass_cache else await self._cached(dep)
            if cached is None:
                to_fetch.append(dep)
            else:
                results[dep.name] = cached

        batches = create_batches(to_fetch)
        logger.info(
            f"GitHub: {len(dependencies) - len(to_fetch)} cached, {len(to_fetch)} to fetch in {len(batches)} batches"
        )
        outcomes = await asyncio.gather(*(self._resolve(b) for b in batches), return_exceptions=True)

        fatal: Optional[ClassifiedError] = None
        for batch, outcome in zip(batches, outcomes):
            if isinstance(outcome, ClassifiedError) and not outcome.recoverable:
                fatal = fatal or outcome
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            for dep in batch:
                if dep.name not in outcome:
                    continue
                vulns = outcome[dep.name]
                results[dep.name] = vulns
                if self._rate_limited:
                    # lookups may have been cut short by the breaker
                    continue
                key = build_key(CACHE_NAMESPACE, dep.name, dep.version)
                self._background.spawn(self._cache.put(key, dump_vulnerabilities(vulns)), description=key)

        if fatal is not None:
            raise fatal
        return results

    async def _cached(self, dep: Dependency) -> Optional[list[Vulnerability]]:
        data = await self._cache.get(build_key(CACHE_NAMESPACE, dep.name, dep.version))
        if data is None:
            return None
        return load_vulnerabilities(data)

    async def _resolve(self, batch: list[Dependency]) -> dict[str, list[Vulnerability]]:
        if self._rate_limited:
            return {}
        try:
            return await self._fetch(batch)
        except ClassifiedError as e:
            if not e.recoverable:
                raise
            if len(batch) == 1:
                logger.warning(f"GitHub: giving up on {batch[0].name}@{batch[0].version}: {e.message}")
                return {}
            mid = len(batch) // 2
            logger.info(f"GitHub: batch of {len(batch)} failed ({e.kind.value}); splitting into {mid} + {len(batch) - mid}")
            left, right = await asyncio.gather(self._resolve(batch[:mid]), self._resolve(batch[mid:]))
            return {**left, **right}

    def _page_url(self, affects: str, cursor: Optional[str]) -> str:
        # built by hand so the already-encoded names in `affects` are not encoded twice
        url = f"{get_github_advisories_path()}?per_page={PER_PAGE}&ecosystem={ECOSYSTEM}&affects={affects}"
        if cursor:
            url += f"&after={quote(cursor, safe='')}"
        return url

    async def _fetch(self, batch: Sequence[Dependency]) -> dict[str, list[Vulnerability]]:
        queried = {d.name for d in batch}
        affects = ",".join(affects_token(d) for d in batch)
        found: dict[str, list[Vulnerability]] = {name: [] for name in queried}

        cursor: Optional[str] = None
        for _ in range(MAX_PAGES):
            if self._rate_limited:
                return found
            url = self._page_url(affects, cursor)
            try:
                resp = await self._http.request("GET", url)
            except ClassifiedError as e:
                if e.status in (401, 403, 429):
                    raise self._trip(e) from e
                raise
            try:
                advisories = _ADVISORY_LIST.validate_python(resp.json())
            except (ValueError, ValidationError) as e:
                raise ClassifiedError(
                    ErrorKind.API_ERROR,
                    f"Unexpected advisory payload: {e}",
                    recoverable=True,
                    status=resp.status_code,
                    url=url,
                    method="GET",
                ) from e

            for advisory in advisories:
                for entry in advisory.vulnerabilities or []:
                    pkg = entry.package
                    if pkg is None or (pkg.ecosystem or "").lower() != ECOSYSTEM or pkg.name not in queried:
                        continue
                    found[pkg.name].append(self._to_vulnerability(advisory, entry))

            cursor = parse_link_header(resp.headers.get("link")).get("next")
            if cursor is None:
                break
        else:
            logger.warning(f"GitHub: stopped after {MAX_PAGES} pages for a batch of {len(batch)}; results may be incomplete")
        return found

    def _trip(self, error: ClassifiedError) -> ClassifiedError:
        self._rate_limited = True
        if error.status == 429 or error.has_rate_limit_signal:
            kind, reason = ErrorKind.RATE_LIMIT, "rate limit exceeded"
        else:
            kind, reason = ErrorKind.AUTH, "authentication failed"
        logger.error(f"GitHub advisory API {reason} (HTTP {error.status}); disabling further lookups")
        return ClassifiedError(
            kind,
            f"GitHub advisory API {reason} (HTTP {error.status})",
            recoverable=False,
            status=error.status,
            url=error.url,
            method=error.method,
            headers=error.headers,
            body=error.body,
        )

    def _to_vulnerability(self, advisory: GitHubAdvisory, entry: GhAdvisoryVulnerability) -> Vulnerability:
        cve_id = next((i.value for i in advisory.identifiers or [] if i.type == "CVE"), None) or advisory.cve_id

        candidates: list[CvssCandidate] = []
        severities = advisory.cvss_severities
        for cvss, hint in (
            (severities.cvss_v4 if severities else None, "CVSS_V4"),
            (severities.cvss_v3 if severities else None, "CVSS_V3"),
            (advisory.cvss, None),
        ):
            if cvss is not None and cvss.vector_string:
                candidates.append(CvssCandidate(vector=cvss.vector_string, type_hint=hint, score=cvss.score))
        selection = self._scorer.select_best(candidates)
        score = selection.score if selection else None
        if score is None and advisory.cvss is not None and advisory.cvss.score:
            score = advisory.cvss.score

        cwe_ids = advisory.cwe_ids or [c.cwe_id for c in advisory.cwes or []]
        return Vulnerability(
            id=cve_id or advisory.ghsa_id,
            title=advisory.summary or "",
            description=advisory.description or "",
            severity=Severity.normalize(score, advisory.severity),
            cvss_score=score,
            cvss_version=selection.version if selection else None,
            vector_string=selection.vector_string if selection else None,
            affected_versions=entry.vulnerable_version_range or "Unknown",
            patched_versions=_patched_versions(entry),
            references=tuple(r.url if isinstance(r, GhReference) else r for r in advisory.references or []),
            cwe_ids=tuple(cwe_ids),
            published_date=parse_timestamp(advisory.published_at),
            last_modified_date=parse_timestamp(advisory.updated_at),
            sources=(VulnerabilitySource.GITHUB,),
        )


def _patched_versions(entry: GhAdvisoryVulnerability) -> Optional[str]:
    if entry.patched_versions:
        return entry.patched_versions
    first = entry.first_patched_version
    if isinstance(first, GhFirstPatchedVersion):
        return f">={first.identifier}"
    if first:
        return f">={first}"
    return None
