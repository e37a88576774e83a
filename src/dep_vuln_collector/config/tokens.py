from __future__ import annotations

from typing import Optional


GITHUB_API_VERSION = "2022-11-28"


def mask_token(token: str, visible: int = 8) -> str:
    """Return a log-safe preview of a token, e.g. ``ghp_1234...``."""
    if len(token) > visible:
        return f"{token[:visible]}..."
    return "***"


def github_headers(token: Optional[str] = None) -> dict[str, str]:
    """Default headers for the GitHub REST API, with a bearer token when one is set."""
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers
