from __future__ import annotations

import httpx
import pytest

from conftest import reply
from dep_vuln_collector.config.tokens import github_headers
from dep_vuln_collector.core.domain.enums import CvssVersion, Severity, VulnerabilitySource
from dep_vuln_collector.core.domain.errors import ClassifiedError, ErrorKind
from dep_vuln_collector.core.domain.models import Dependency
from dep_vuln_collector.infra.background import BackgroundTasks
from dep_vuln_collector.infra.cvss_scorer import CvssScorer
from dep_vuln_collector.infra.github_advisory_source import (
    MAX_PAGES,
    GitHubAdvisorySource,
    affects_token,
    create_batches,
    parse_link_header,
)
from dep_vuln_collector.infra.http_client import HttpClient
from dep_vuln_collector.infra.persistent_cache import build_key

BASE = "https://api.github.test"
ADVISORIES = "/advisories"


def _advisory(name: str, *, ghsa: str | None = None, severity: str = "moderate", ecosystem: str = "npm", **extra):
    return {
        "ghsa_id": ghsa or f"GHSA-{name}-0000-0000",
        "summary": f"Issue in {name}",
        "severity": severity,
        "vulnerabilities": [
            {"package": {"ecosystem": ecosystem, "name": name}, "vulnerable_version_range": "< 2.0.0"},
        ],
        **extra,
    }


def _queried(request: httpx.Request) -> list[str]:
    affects = request.url.params.get("affects", "")
    return [token.rpartition("@")[0] for token in affects.split(",") if token]


def _echo_handler(request: httpx.Request) -> httpx.Response:
    """One moderate advisory per queried package."""
    return httpx.Response(200, json=[_advisory(name) for name in _queried(request)])


@pytest.fixture
def background() -> BackgroundTasks:
    return BackgroundTasks()


@pytest.fixture
def make_source(mock_api, fake_clock, cache, background):
    def factory(token: str | None = None) -> GitHubAdvisorySource:
        http = HttpClient(BASE, headers=github_headers(token), transport=mock_api.transport, clock=fake_clock)
        return GitHubAdvisorySource(http, cache, CvssScorer(), background)

    return factory


def test_affects_token_encodes_scoped_names():
    assert affects_token(Dependency("lodash", "4.17.20")) == "lodash@4.17.20"
    assert affects_token(Dependency("@babel/core", "7.0.0")) == "%40babel%2Fcore@7.0.0"


def test_create_batches_respects_count_limit():
    deps = [Dependency(f"p{i}", "1.0.0") for i in range(5)]
    assert [len(b) for b in create_batches(deps, max_size=2)] == [2, 2, 1]
    assert create_batches([]) == []


def test_create_batches_respects_length_limit():
    deps = [Dependency(f"pkg{i}", "1.0.0") for i in range(6)]
    # "pkgN@1.0.0" is 10 chars, 11 with its comma
    batches = create_batches(deps, max_length=33)
    assert [len(b) for b in batches] == [3, 3]
    assert [d.name for b in batches for d in b] == [d.name for d in deps]


def test_create_batches_default_limits():
    deps = [Dependency(f"package-number-{i}", "10.20.30") for i in range(1200)]
    batches = create_batches(deps)
    assert all(len(b) <= 500 for b in batches)
    assert all(sum(len(affects_token(d)) + 1 for d in b) <= 8000 for b in batches)
    assert sum(len(b) for b in batches) == 1200


def test_parse_link_header():
    header = (
        '<https://api.github.com/advisories?per_page=100&after=Y3Vyc29yOjI%3D>; rel="next", '
        '<https://api.github.com/advisories?per_page=100&before=Y3Vyc29yOjE%3D>; rel="prev"'
    )
    assert parse_link_header(header) == {"next": "Y3Vyc29yOjI=", "prev": "Y3Vyc29yOjE="}
    assert parse_link_header(None) == {}
    assert parse_link_header('<https://x/advisories?per_page=100>; rel="first"') == {}


@pytest.mark.asyncio
async def test_empty_input_makes_no_requests(make_source, mock_api):
    assert await make_source().get_batch_vulnerabilities([]) == {}
    assert mock_api.calls == []


@pytest.mark.asyncio
async def test_advisory_mapping_and_query(make_source, mock_api, background):
    advisory = {
        "ghsa_id": "GHSA-35jh-r3h4-6jhm",
        "cve_id": "CVE-2021-23337",
        "summary": "Command Injection in lodash",
        "description": "template is vulnerable",
        "severity": "high",
        "identifiers": [{"type": "GHSA", "value": "GHSA-35jh-r3h4-6jhm"}, {"type": "CVE", "value": "CVE-2021-23337"}],
        "cvss_severities": {
            "cvss_v3": {"score": 7.2, "vector_string": "CVSS:3.1/AV:N/AC:L/PR:H/UI:N/S:U/C:H/I:H/A:H"},
            "cvss_v4": {"score": 0.0, "vector_string": None},
        },
        "cwes": [{"cwe_id": "CWE-77", "name": "Command Injection"}],
        "references": ["https://nvd.nist.gov/vuln/detail/CVE-2021-23337"],
        "published_at": "2021-02-15T11:10:00Z",
        "updated_at": "2024-01-01T00:00:00Z",
        "vulnerabilities": [
            {
                "package": {"ecosystem": "npm", "name": "lodash"},
                "vulnerable_version_range": "< 4.17.21",
                "first_patched_version": "4.17.21",
            },
            {"package": {"ecosystem": "pip", "name": "lodash"}, "vulnerable_version_range": "< 1"},
            {"package": {"ecosystem": "npm", "name": "not-asked"}, "vulnerable_version_range": "< 1"},
        ],
    }
    mock_api.add(ADVISORIES, reply(200, [advisory]))

    results = await make_source().get_batch_vulnerabilities(
        [Dependency("lodash", "4.17.20"), Dependency("@babel/core", "7.0.0")]
    )
    await background.drain()

    assert results["@babel/core"] == []
    [vuln] = results["lodash"]
    assert vuln.id == "CVE-2021-23337"
    assert vuln.cvss_score == 7.2
    assert vuln.cvss_version is CvssVersion.V3_1
    assert vuln.severity is Severity.HIGH
    assert vuln.affected_versions == "< 4.17.21"
    assert vuln.patched_versions == ">=4.17.21"
    assert vuln.cwe_ids == ("CWE-77",)
    assert vuln.references == ("https://nvd.nist.gov/vuln/detail/CVE-2021-23337",)
    assert vuln.sources == (VulnerabilitySource.GITHUB,)

    [request] = mock_api.calls_to(ADVISORIES)
    assert request.url.params["per_page"] == "100"
    assert request.url.params["ecosystem"] == "npm"
    assert request.url.params["affects"] == "lodash@4.17.20,@babel/core@7.0.0"
    assert request.headers["X-GitHub-Api-Version"] == "2022-11-28"
    assert "Authorization" not in request.headers


@pytest.mark.asyncio
async def test_ghsa_id_and_label_fallbacks(make_source, mock_api, background):
    mock_api.add(ADVISORIES, reply(200, [_advisory("minimist", ghsa="GHSA-xvch-5gv4-984h", cwe_ids=["CWE-1321"])]))

    results = await make_source().get_batch_vulnerabilities([Dependency("minimist", "1.2.5")])
    await background.drain()

    [vuln] = results["minimist"]
    assert vuln.id == "GHSA-xvch-5gv4-984h"
    assert vuln.severity is Severity.MEDIUM
    assert vuln.cvss_score is None
    assert vuln.patched_versions is None
    assert vuln.cwe_ids == ("CWE-1321",)


@pytest.mark.asyncio
async def test_follows_next_links(make_source, mock_api, background):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("after") == "page2":
            return httpx.Response(200, json=[_advisory("a", ghsa="GHSA-page-0002-0000")])
        return httpx.Response(
            200,
            json=[_advisory("a", ghsa="GHSA-page-0001-0000")],
            headers={"Link": f'<{BASE}/advisories?per_page=100&after=page2>; rel="next"'},
        )

    mock_api.add_handler(ADVISORIES, handler)

    results = await make_source().get_batch_vulnerabilities([Dependency("a", "1.0.0")])
    await background.drain()

    assert [v.id for v in results["a"]] == ["GHSA-page-0001-0000", "GHSA-page-0002-0000"]
    assert len(mock_api.calls_to(ADVISORIES)) == 2


@pytest.mark.asyncio
async def test_pagination_is_capped(make_source, mock_api, background):
    mock_api.add(
        ADVISORIES,
        reply(200, [], {"Link": f'<{BASE}/advisories?after=again>; rel="next"'}),
    )

    results = await make_source().get_batch_vulnerabilities([Dependency("a", "1.0.0")])
    await background.drain()

    assert results == {"a": []}
    assert len(mock_api.calls_to(ADVISORIES)) == MAX_PAGES


@pytest.mark.asyncio
async def test_failing_batch_is_split_until_culprit_isolated(make_source, mock_api, background, cache):
    def handler(request: httpx.Request) -> httpx.Response:
        if "bad" in _queried(request):
            return httpx.Response(422, json={"message": "Validation Failed"})
        return _echo_handler(request)

    mock_api.add_handler(ADVISORIES, handler)
    deps = [Dependency(n, "1.0.0") for n in ("a", "b", "bad", "c")]

    results = await make_source().get_batch_vulnerabilities(deps)
    await background.drain()

    assert {name: len(v) for name, v in results.items()} == {"a": 1, "b": 1, "bad": 0, "c": 1}
    # [a,b,bad,c] -> [a,b] ok, [bad,c] -> [bad] fails, [c] ok
    assert len(mock_api.calls_to(ADVISORIES)) == 5
    assert await cache.get(build_key("github", "a", "1.0.0")) is not None
    assert await cache.get(build_key("github", "bad", "1.0.0")) is None


@pytest.mark.asyncio
async def test_unexpected_payload_is_recoverable(make_source, mock_api, background, cache):
    mock_api.add(ADVISORIES, reply(200, {"message": "not a list"}))

    results = await make_source().get_batch_vulnerabilities([Dependency("a", "1.0.0")])
    await background.drain()

    assert results == {"a": []}
    assert await cache.get(build_key("github", "a", "1.0.0")) is None


@pytest.mark.asyncio
async def test_auth_failure_trips_circuit_breaker(make_source, mock_api, background, cache):
    mock_api.add(ADVISORIES, reply(401, {"message": "Bad credentials"}))
    source = make_source("ghp_badtoken")
    deps = [Dependency("a", "1.0.0"), Dependency("b", "1.0.0")]

    with pytest.raises(ClassifiedError) as exc_info:
        await source.get_batch_vulnerabilities(deps)
    assert exc_info.value.kind is ErrorKind.AUTH
    assert exc_info.value.recoverable is False
    assert source.is_rate_limited
    assert len(mock_api.calls_to(ADVISORIES)) == 1

    await cache.put(build_key("github", "a", "1.0.0"), [])
    assert await source.get_batch_vulnerabilities(deps) == {"a": [], "b": []}
    assert len(mock_api.calls_to(ADVISORIES)) == 1
    await background.drain()


@pytest.mark.asyncio
async def test_exhausted_quota_trips_as_rate_limit(make_source, mock_api, background, fake_clock):
    mock_api.add(ADVISORIES, reply(403, {"message": "API rate limit exceeded"}, {"X-RateLimit-Remaining": "0"}))
    source = make_source()

    with pytest.raises(ClassifiedError) as exc_info:
        await source.get_batch_vulnerabilities([Dependency("a", "1.0.0")])

    assert exc_info.value.kind is ErrorKind.RATE_LIMIT
    assert exc_info.value.status == 403
    assert source.is_rate_limited
    assert fake_clock.sleeps == []


@pytest.mark.asyncio
async def test_429_is_retried_then_trips(make_source, mock_api, background, fake_clock):
    mock_api.add(ADVISORIES, reply(429))
    source = make_source()

    with pytest.raises(ClassifiedError) as exc_info:
        await source.get_batch_vulnerabilities([Dependency("a", "1.0.0")])

    assert exc_info.value.kind is ErrorKind.RATE_LIMIT
    assert len(mock_api.calls_to(ADVISORIES)) == 3
    assert fake_clock.sleeps == [1, 2]
    assert source.is_rate_limited


@pytest.mark.asyncio
async def test_update_token_rearms_breaker(make_source, mock_api, background):
    mock_api.add(ADVISORIES, reply(401), reply(200, [_advisory("a")]))
    source = make_source()
    deps = [Dependency("a", "1.0.0")]

    with pytest.raises(ClassifiedError):
        await source.get_batch_vulnerabilities(deps)

    source.update_token("ghp_goodtoken")
    assert not source.is_rate_limited
    results = await source.get_batch_vulnerabilities(deps)
    await background.drain()

    assert len(results["a"]) == 1
    assert mock_api.calls_to(ADVISORIES)[-1].headers["Authorization"] == "Bearer ghp_goodtoken"

    source.clear_token()
    assert not source._http.has_bearer_token


@pytest.mark.asyncio
async def test_results_are_cached_and_bypass_refetches(make_source, mock_api, background, cache):
    mock_api.add_handler(ADVISORIES, _echo_handler)
    deps = [Dependency("a", "1.0.0")]

    await make_source().get_batch_vulnerabilities(deps)
    await background.drain()
    cached = await make_source().get_batch_vulnerabilities(deps)
    assert len(mock_api.calls_to(ADVISORIES)) == 1
    assert cached["a"][0].id == "GHSA-a-0000-0000"

    await cache.put(build_key("osv", "a", "1.0.0"), [])
    await make_source().get_batch_vulnerabilities(deps, bypass_cache=True)
    await background.drain()
    assert len(mock_api.calls_to(ADVISORIES)) == 2
    assert await cache.get(build_key("osv", "a", "1.0.0")) == []


@pytest.mark.asyncio
async def test_severe_cached_results_are_refetched(make_source, mock_api, background):
    mock_api.add(ADVISORIES, reply(200, [_advisory("a", severity="critical")]))
    deps = [Dependency("a", "1.0.0")]

    await make_source().get_batch_vulnerabilities(deps)
    await background.drain()
    await make_source().get_batch_vulnerabilities(deps)
    await background.drain()

    assert len(mock_api.calls_to(ADVISORIES)) == 2
