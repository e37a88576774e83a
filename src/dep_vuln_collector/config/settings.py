from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration with automatic environment variable loading.

    All settings can be overridden via environment variables (or a local .env file)
    with the DEP_VULN_COLLECTOR_ prefix.
    For example:
        - DEP_VULN_COLLECTOR_GITHUB_TOKEN=ghp_xxx
        - DEP_VULN_COLLECTOR_CACHE_DIR=/path/to/cache
        - DEP_VULN_COLLECTOR_CACHE_TTL_MINUTES=120
        - DEP_VULN_COLLECTOR_ENABLE_GITHUB=false

    Alternatively, settings can be provided programmatically when creating the Container:
        container = Container()
        container.config.from_pydantic(AppConfig(github_token="ghp_xxx"))
    """

    model_config = SettingsConfigDict(
        env_prefix="DEP_VULN_COLLECTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="forbid",
    )

    github_token: Optional[str] = Field(
        default=None,
        description="GitHub token sent as a bearer token to the advisory API (raises the rate limit from 60/hour to 5000/hour)",
    )

    cache_dir: Optional[Path] = Field(
        default=None,
        description="Custom cache directory path. If None, uses platformdirs.user_cache_dir('dep-vuln-collector')",
    )

    cache_ttl_minutes: int = Field(
        default=60,
        ge=1,
        description="Lifetime of cached per-package vulnerability lists in minutes",
    )

    bypass_cache_for_critical: bool = Field(
        default=True,
        description="Treat cached lists containing critical or high findings as misses so they are always refreshed",
    )

    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Default per-request timeout for remote APIs",
    )

    max_retries: int = Field(
        default=3,
        ge=1,
        description="Total attempts per request for retryable failures (timeouts, 429, 5xx)",
    )

    osv_max_concurrent: int = Field(
        default=50,
        ge=1,
        description="Upper bound on in-flight requests to the OSV API; workload tuning stays at or below it",
    )

    github_max_concurrent: int = Field(
        default=10,
        ge=1,
        description="Upper bound on in-flight requests to the GitHub advisory API; workload tuning stays at or below it",
    )

    enable_osv: bool = Field(default=True, description="Query the OSV database")

    enable_github: bool = Field(default=True, description="Query the GitHub advisory database")
