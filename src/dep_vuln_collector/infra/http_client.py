from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from ..core.domain.errors import ClassifiedError, ErrorKind
from ..core.ports.clock_port import ClockPort, SystemClock
from .request_gate import ConcurrencyGate, optimal_concurrency

logger = logging.getLogger(__name__)

_MAX_ERROR_BODY = 2000


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


def is_retryable_error(exc: BaseException) -> bool:
    """Timeouts, connection failures, 429 and 5xx are worth another attempt."""
    if not isinstance(exc, ClassifiedError):
        return False
    if exc.kind is ErrorKind.NETWORK:
        return True
    return exc.status is not None and is_retryable_status(exc.status)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    attempts = retry_state.retry_object.stop.max_attempt_number
    logger.warning(f"{error}; retrying in {delay:g}s ({retry_state.attempt_number}/{attempts})")


def classify_response(resp: httpx.Response, method: str, url: str) -> ClassifiedError:
    status = resp.status_code
    body = resp.text[:_MAX_ERROR_BODY]
    if status in (401, 403):
        kind, recoverable = ErrorKind.AUTH, False
    elif status == 429:
        kind, recoverable = ErrorKind.RATE_LIMIT, True
    elif status == 404:
        kind, recoverable = ErrorKind.NOT_FOUND, True
    else:
        kind, recoverable = ErrorKind.API_ERROR, True
    return ClassifiedError(
        kind,
        f"HTTP {status} for {method} {url}",
        recoverable=recoverable,
        status=status,
        url=url,
        method=method,
        headers=dict(resp.headers),
        body=body,
    )


def classify_transport_error(exc: httpx.TransportError, method: str, url: str) -> ClassifiedError:
    if isinstance(exc, httpx.TimeoutException):
        message = f"Request timed out: {method} {url}"
    elif isinstance(exc, httpx.ConnectError):
        message = f"Connection failed: {method} {url} ({exc})"
    else:
        message = f"No response received: {method} {url} ({exc.__class__.__name__}: {exc})"
    return ClassifiedError(ErrorKind.NETWORK, message, recoverable=True, url=url, method=method)


class HttpClient:
    """Async JSON client with bounded concurrency and exponential backoff.

    Every request holds one gate slot for its whole retry loop. Timeouts,
    connection failures, 429 and 5xx are retried through tenacity with waits
    of 1s, 2s, 4s... between attempts; other statuses fail immediately. All
    failures surface as ClassifiedError.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout_seconds: float = 30.0,
        max_concurrent: int = 10,
        max_retries: int = 3,
        clock: Optional[ClockPort] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=dict(headers or {}),
            timeout=timeout_seconds,
            follow_redirects=True,
            max_redirects=10,
            transport=transport,
        )
        self._max_concurrent = max_concurrent
        self._gate = ConcurrencyGate(max_concurrent)
        self._clock = clock or SystemClock()
        self._max_retries = max(1, max_retries)

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    def tune_concurrency(self, total_dependencies: int) -> None:
        """Size the gate for a workload, never above the configured ``max_concurrent``."""
        self._gate.resize(min(optimal_concurrency(total_dependencies), self._max_concurrent))

    @property
    def has_bearer_token(self) -> bool:
        return "Authorization" in self._client.headers

    def set_bearer_token(self, token: str) -> None:
        self._client.headers["Authorization"] = f"Bearer {token}"

    def clear_bearer_token(self) -> None:
        self._client.headers.pop("Authorization", None)

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
    ) -> httpx.Response:
        attempts = self._max_retries if retries is None else max(1, retries)
        kwargs: dict[str, Any] = {}
        if json is not None:
            kwargs["json"] = json
        if params is not None:
            kwargs["params"] = params
        if headers is not None:
            kwargs["headers"] = headers
        if timeout is not None:
            kwargs["timeout"] = timeout
        return await self._gate.enqueue(lambda: self._send_with_retry(method, url, attempts, kwargs))

    async def _send_with_retry(
        self,
        method: str,
        url: str,
        attempts: int,
        kwargs: dict[str, Any],
    ) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=1, exp_base=2),
            retry=retry_if_exception(is_retryable_error),
            sleep=self._clock.sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            return await retrying(self._send_once, method, url, kwargs)
        except ClassifiedError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                logger.debug(f"{method} {url} -> 404")
            else:
                logger.error(f"{method} {url} failed: {e.message}")
            raise

    async def _send_once(self, method: str, url: str, kwargs: dict[str, Any]) -> httpx.Response:
        logger.debug(f"{method} {url}")
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise classify_transport_error(e, method, url) from e
        if not resp.is_success:
            raise classify_response(resp, method, url)
        logger.debug(f"{method} {url} -> {resp.status_code}")
        return resp

    async def get_json(self, url: str, *, params: Optional[Mapping[str, str]] = None, timeout: Optional[float] = None) -> Any:
        resp = await self.request("GET", url, params=params, timeout=timeout)
        return _decode_json(resp, "GET", url)

    async def post_json(self, url: str, payload: dict, *, timeout: Optional[float] = None) -> dict:
        resp = await self.request("POST", url, json=payload, timeout=timeout)
        data = _decode_json(resp, "POST", url)
        if not isinstance(data, dict):
            raise ClassifiedError(
                ErrorKind.API_ERROR,
                f"Expected JSON object from POST {url}",
                recoverable=True,
                status=resp.status_code,
                url=url,
                method="POST",
            )
        return data

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


def _decode_json(resp: httpx.Response, method: str, url: str) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        raise ClassifiedError(
            ErrorKind.API_ERROR,
            f"Invalid JSON from {method} {url}: {e}",
            recoverable=True,
            status=resp.status_code,
            url=url,
            method=method,
        ) from e
