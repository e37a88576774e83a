"""tests/dep_vuln_collector/conftest.py

Common fixtures for the entire test suite.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from dep_vuln_collector.infra.blob_store import LocalBlobStore
from dep_vuln_collector.infra.persistent_cache import PersistentCache


class FakeClock:
    """Clock whose time only moves when told to; records requested sleeps."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


Reply = tuple[int, Any, dict[str, str]]


def reply(status_code: int = 200, json_payload: Any = None, headers: dict[str, str] | None = None) -> Reply:
    return (status_code, json_payload, dict(headers or {}))


def build_response(canned: Reply) -> httpx.Response:
    status_code, payload, headers = canned
    if payload is None:
        return httpx.Response(status_code, content=b"", headers=headers)
    if isinstance(payload, str):
        return httpx.Response(status_code, text=payload, headers=headers)
    return httpx.Response(status_code, json=payload, headers=headers)


class MockApi:
    """Registry of canned replies served through an httpx.MockTransport.

    Routes are matched on (method, path). A route holds a list of replies
    consumed in order (the last one repeats), or a callable taking the
    request. Unmatched requests get a 404.
    """

    def __init__(self) -> None:
        self._routes: dict[tuple[str, str], Any] = {}
        self.calls: list[httpx.Request] = []

    def add(
        self,
        path: str,
        *replies: Reply,
        method: str = "GET",
    ) -> None:
        self._routes[(method.upper(), path)] = list(replies) or [reply()]

    def add_handler(self, path: str, handler: Callable[[httpx.Request], httpx.Response], *, method: str = "GET") -> None:
        self._routes[(method.upper(), path)] = handler

    def calls_to(self, path: str, method: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.calls
            if r.url.path == path and (method is None or r.method == method.upper())
        ]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        route = self._routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, text=f"Mock URL not found: {request.method} {request.url}")
        if callable(route):
            return route(request)
        canned = route.pop(0) if len(route) > 1 else route[0]
        return build_response(canned)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_api() -> MockApi:
    return MockApi()


@pytest.fixture
def blob_store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "cache")


@pytest.fixture
def cache(blob_store: LocalBlobStore, fake_clock: FakeClock) -> PersistentCache:
    return PersistentCache(blob_store, clock=fake_clock)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch):
    """Keep tests away from the user's cache directory, token and .env file."""
    monkeypatch.setenv("DEP_VULN_COLLECTOR_CACHE_DIR", str(tmp_path / "env-cache"))
    monkeypatch.delenv("DEP_VULN_COLLECTOR_GITHUB_TOKEN", raising=False)
    monkeypatch.chdir(tmp_path)
    yield
