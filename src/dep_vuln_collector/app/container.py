from __future__ import annotations

import logging

from dependency_injector import containers, providers

from ..config.settings import AppConfig
from ..config.tokens import github_headers, mask_token
from ..config.urls import GITHUB_API_BASE_URL, OSV_API_BASE_URL
from ..core.ports.clock_port import SystemClock
from ..core.ports.vulnerability_source_port import VulnerabilitySourcePort
from ..core.services.composite_source import CompositeVulnerabilitySource
from ..core.usecases.clear_cache import ClearCacheUseCase
from ..core.usecases.scan_dependencies import ScanDependenciesUseCase
from ..infra.background import BackgroundTasks
from ..infra.blob_store import LocalBlobStore
from ..infra.cvss_scorer import CvssScorer
from ..infra.github_advisory_source import GitHubAdvisorySource
from ..infra.http_client import HttpClient
from ..infra.osv_source import OsvVulnerabilitySource
from ..infra.persistent_cache import PersistentCache

logger = logging.getLogger(__name__)


def blob_store_factory(cache_dir):
	store = LocalBlobStore(cache_dir)
	logger.info(f"Initializing cache at: {store.base_dir}")
	return store


def github_headers_factory(github_token):
	if github_token:
		logger.info(f"GitHub token found: {mask_token(github_token)} (length: {len(github_token)})")
	else:
		logger.warning("No GitHub token configured - using anonymous access (rate limit: 60/hour)")
	return github_headers(github_token)


def select_sources(enable_osv, enable_github, osv, github) -> list[VulnerabilitySourcePort]:
	sources: list[VulnerabilitySourcePort] = []
	if enable_osv:
		sources.append(osv)
	if enable_github:
		sources.append(github)
	if not sources:
		logger.warning("All vulnerability sources are disabled")
	return sources


class Container(containers.DeclarativeContainer):
	config = providers.Configuration(pydantic_settings=[AppConfig()])

	# Tests swap in httpx.MockTransport here
	http_transport = providers.Object(None)

	clock = providers.Singleton(SystemClock)
	background = providers.Singleton(BackgroundTasks)

	blob_store = providers.Singleton(blob_store_factory, cache_dir=config.cache_dir)

	cache = providers.Singleton(
		PersistentCache,
		store=blob_store,
		ttl_minutes=config.cache_ttl_minutes,
		bypass_for_critical=config.bypass_cache_for_critical,
		clock=clock,
	)

	osv_http = providers.Singleton(
		HttpClient,
		base_url=OSV_API_BASE_URL,
		timeout_seconds=config.request_timeout_seconds,
		max_concurrent=config.osv_max_concurrent,
		max_retries=config.max_retries,
		clock=clock,
		transport=http_transport,
	)

	github_http = providers.Singleton(
		HttpClient,
		base_url=GITHUB_API_BASE_URL,
		headers=providers.Callable(github_headers_factory, github_token=config.github_token),
		timeout_seconds=config.request_timeout_seconds,
		max_concurrent=config.github_max_concurrent,
		max_retries=config.max_retries,
		clock=clock,
		transport=http_transport,
	)

	osv_source = providers.Singleton(
		OsvVulnerabilitySource,
		http_client=osv_http,
		cache=cache,
		scorer=providers.Factory(CvssScorer),
		background=background,
	)

	github_source = providers.Singleton(
		GitHubAdvisorySource,
		http_client=github_http,
		cache=cache,
		scorer=providers.Factory(CvssScorer),
		background=background,
	)

	sources = providers.Callable(
		select_sources,
		enable_osv=config.enable_osv,
		enable_github=config.enable_github,
		osv=osv_source,
		github=github_source,
	)

	composite_source = providers.Singleton(CompositeVulnerabilitySource, sources=sources)

	scan_uc = providers.Factory(ScanDependenciesUseCase, source=composite_source)
	clear_cache_uc = providers.Factory(ClearCacheUseCase, cache=cache)
