from __future__ import annotations

from enum import Enum
from typing import Mapping, Optional


class ErrorKind(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    API_ERROR = "api_error"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class ClassifiedError(Exception):
    """Failure of a remote call, tagged with a kind and whether work may continue.

    ``recoverable=False`` means the caller should stop issuing requests to the
    same provider (bad credentials, exhausted quota).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        recoverable: bool,
        status: Optional[int] = None,
        url: Optional[str] = None,
        method: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.recoverable = recoverable
        self.status = status
        self.url = url
        self.method = method
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.body = body

    @property
    def has_rate_limit_signal(self) -> bool:
        if self.headers.get("x-ratelimit-remaining") == "0":
            return True
        return bool(self.body) and "rate limit" in self.body.lower()

    def __repr__(self) -> str:
        return (
            f"ClassifiedError(kind={self.kind.value!r}, status={self.status!r}, "
            f"recoverable={self.recoverable!r}, message={self.message!r})"
        )
