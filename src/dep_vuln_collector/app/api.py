from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional, Sequence

import httpx

from .container import Container
from ..config.settings import AppConfig
from ..core.domain.models import Dependency, Vulnerability
from ..infra.github_token import TokenStatus, validate_github_token


class DepVulnClient:
    """Async client for looking up known vulnerabilities of npm dependencies.

    The container and its sessions (HTTP connection pools, in-memory detail
    caches, the GitHub circuit breaker) live as long as the client, so reuse
    one instance across scans.

    Example:
        # Using default configuration (from environment variables)
        async with DepVulnClient() as client:
            results = await client.get_batch_vulnerabilities([
                Dependency(name="lodash", version="4.17.20"),
                Dependency(name="express", version="4.17.1"),
            ])
            for name, vulns in results.items():
                print(name, [v.id for v in vulns])

        # Customize settings
        async with DepVulnClient(github_token="ghp_xxx", cache_ttl_minutes=120) as client:
            vulns = await client.get_vulnerabilities("minimist", "1.2.0")
    """

    def __init__(
        self,
        *,
        github_token: str | None = None,
        cache_dir: str | Path | None = None,
        cache_ttl_minutes: int | None = None,
        bypass_cache_for_critical: bool | None = None,
        enable_osv: bool | None = None,
        enable_github: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            github_token: Optional GitHub token for the advisory API.
                         If None, uses DEP_VULN_COLLECTOR_GITHUB_TOKEN.
            cache_dir: Optional custom cache directory path.
                      If None, uses DEP_VULN_COLLECTOR_CACHE_DIR or the user cache directory.
            cache_ttl_minutes: Optional lifetime of cached results in minutes (default 60).
            bypass_cache_for_critical: Optional override for always refreshing
                                       cached lists that contain critical/high findings.
            enable_osv: Optional switch for the OSV source.
            enable_github: Optional switch for the GitHub advisory source.
            transport: Optional httpx transport used for every outbound request
                       (e.g. httpx.MockTransport in tests).
        """
        self._container = Container()

        # Build config dict with only provided values
        config_dict: dict[str, object] = {}
        if github_token is not None:
            config_dict["github_token"] = github_token
        if cache_dir is not None:
            config_dict["cache_dir"] = Path(cache_dir) if isinstance(cache_dir, str) else cache_dir
        if cache_ttl_minutes is not None:
            config_dict["cache_ttl_minutes"] = cache_ttl_minutes
        if bypass_cache_for_critical is not None:
            config_dict["bypass_cache_for_critical"] = bypass_cache_for_critical
        if enable_osv is not None:
            config_dict["enable_osv"] = enable_osv
        if enable_github is not None:
            config_dict["enable_github"] = enable_github

        if config_dict:
            self._container.config.from_pydantic(AppConfig(**config_dict))
        if transport is not None:
            self._container.http_transport.override(transport)

    async def get_batch_vulnerabilities(
        self,
        dependencies: Sequence[Dependency],
        *,
        bypass_cache: bool = False,
    ) -> dict[str, list[Vulnerability]]:
        """Return vulnerabilities per dependency name from every enabled source.

        Every requested name has an entry (possibly empty). With
        ``bypass_cache=True`` all caches are cleared and data is re-fetched.

        Raises:
            ClassifiedError: when every enabled source failed unrecoverably
                (e.g. GitHub authentication with OSV disabled).
        """
        uc = self._container.scan_uc()
        return await uc.execute(dependencies, bypass_cache=bypass_cache)

    async def get_vulnerabilities(self, name: str, version: str, *, bypass_cache: bool = False) -> list[Vulnerability]:
        results = await self.get_batch_vulnerabilities([Dependency(name=name, version=version)], bypass_cache=bypass_cache)
        return results.get(name, [])

    @property
    def last_errors(self) -> list[Exception]:
        """Source failures from the most recent scan that did not abort it."""
        return list(self._container.composite_source().last_errors)

    async def clear_cache(self, namespace: Optional[str] = None) -> int:
        """Delete cached results for one source ("osv", "github") or all; returns the count."""
        uc = self._container.clear_cache_uc()
        return await uc.execute(namespace)

    async def validate_github_token(self, token: Optional[str] = None) -> TokenStatus:
        token = token or self._container.config.github_token()
        if not token:
            return TokenStatus(valid=False, message="No GitHub token configured")
        return await asyncio.to_thread(validate_github_token, token)

    def update_github_token(self, token: str) -> None:
        self._container.github_source().update_token(token)

    def clear_github_token(self) -> None:
        self._container.github_source().clear_token()

    async def drain(self) -> None:
        """Wait for pending background cache writes."""
        await self._container.background().drain()

    async def aclose(self) -> None:
        await self.drain()
        await self._container.osv_http().aclose()
        await self._container.github_http().aclose()

    async def __aenter__(self) -> "DepVulnClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


__all__ = [
    "DepVulnClient",
    "AppConfig",
]
