from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from github import Auth, BadCredentialsException, Github, GithubException

from ..config.tokens import mask_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenStatus:
    valid: bool
    login: Optional[str] = None
    rate_limit_remaining: Optional[int] = None
    rate_limit_total: Optional[int] = None
    message: Optional[str] = None


def _default_client(token: str) -> Github:
    return Github(auth=Auth.Token(token))


def _core_rate_limit(client: Github) -> tuple[Optional[int], Optional[int]]:
    rate_limit = client.get_rate_limit()
    # PyGithub moved `core` under `resources` in newer releases
    core = getattr(rate_limit, "core", None) or getattr(getattr(rate_limit, "resources", None), "core", None)
    if core is None:
        return None, None
    return core.remaining, core.limit


def validate_github_token(
    token: str,
    *,
    client_factory: Callable[[str], Github] = _default_client,
) -> TokenStatus:
    """Check a token against the authenticated-user endpoint.

    Blocking (PyGithub is synchronous); call it through ``asyncio.to_thread``
    from async code.
    """
    logger.info(f"Validating GitHub token {mask_token(token)}")
    client = client_factory(token)
    try:
        login = client.get_user().login
    except BadCredentialsException:
        logger.warning("GitHub rejected the token (bad credentials)")
        return TokenStatus(valid=False, message="Bad credentials")
    except GithubException as e:
        logger.warning(f"GitHub token check failed: HTTP {e.status}")
        return TokenStatus(valid=False, message=f"GitHub API error (HTTP {e.status})")
    else:
        remaining = total = None
        try:
            remaining, total = _core_rate_limit(client)
        except GithubException as e:
            logger.warning(f"Failed to get rate limit info: {e}")
        logger.info(f"GitHub token valid for {login} (remaining: {remaining}/{total})")
        return TokenStatus(valid=True, login=login, rate_limit_remaining=remaining, rate_limit_total=total)
    finally:
        client.close()
