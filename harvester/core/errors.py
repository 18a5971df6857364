"""
Error Taxonomy for Discovery and Extraction

Every failure a network operation can produce is mapped onto one ErrorKind
so the retry orchestrator decides recovery actions in one place:

- RATE_LIMITED: 429 or equivalent message -> block credentials, back off
- BLOCKED: 401/403 -> block credentials, rotate session
- SERVER_OR_NETWORK: 5xx, timeouts, connection resets -> back off
- NON_RETRYABLE: 404 and unknown failures -> abort immediately
- MALFORMED_RESPONSE: unexpected body shape -> retry once, then escalate
- POOL_EXHAUSTED: no credentials available -> retry after mandatory delay
"""

from enum import Enum
from typing import Optional

import requests


class ErrorKind(Enum):
    RATE_LIMITED = "rate_limited"
    BLOCKED = "blocked"
    SERVER_OR_NETWORK = "server_or_network"
    NON_RETRYABLE = "non_retryable"
    MALFORMED_RESPONSE = "malformed_response"
    POOL_EXHAUSTED = "pool_exhausted"


RETRYABLE_KINDS = frozenset({
    ErrorKind.RATE_LIMITED,
    ErrorKind.BLOCKED,
    ErrorKind.SERVER_OR_NETWORK,
    ErrorKind.MALFORMED_RESPONSE,
    ErrorKind.POOL_EXHAUSTED,
})


class DiscoveryError(Exception):
    """Base class for classified failures"""
    kind: ErrorKind = ErrorKind.NON_RETRYABLE

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        self.attempts = 0
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class RateLimitedError(DiscoveryError):
    kind = ErrorKind.RATE_LIMITED


class BlockedError(DiscoveryError):
    kind = ErrorKind.BLOCKED


class ServerOrNetworkError(DiscoveryError):
    kind = ErrorKind.SERVER_OR_NETWORK


class NonRetryableError(DiscoveryError):
    kind = ErrorKind.NON_RETRYABLE


class MalformedResponseError(DiscoveryError):
    kind = ErrorKind.MALFORMED_RESPONSE


class PoolExhaustedError(DiscoveryError):
    kind = ErrorKind.POOL_EXHAUSTED


class JobCancelled(Exception):
    """Raised from any interruptible wait once cancellation was requested"""


_RATE_LIMIT_MARKERS = ("rate limit", "too many requests")
_BLOCKED_MARKERS = ("unauthorized", "forbidden", "blocked", "session rotation needed")
_NETWORK_MARKERS = ("timeout", "timed out", "etimedout", "econnreset", "connection reset")


def error_for_status(status: int, message: str = "") -> Optional[DiscoveryError]:
    """Build the classified error for an HTTP status, None for 2xx/3xx"""
    if status < 400:
        return None

    text = message or f"HTTP {status}"
    if status == 429:
        return RateLimitedError(text, status_code=status)
    if status in (401, 403):
        return BlockedError(text, status_code=status)
    if status >= 500:
        return ServerOrNetworkError(text, status_code=status)
    return NonRetryableError(text, status_code=status)


def classify(exc: BaseException) -> DiscoveryError:
    """Map any exception raised by a network operation to a DiscoveryError"""
    if isinstance(exc, DiscoveryError):
        return exc

    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        error = error_for_status(exc.response.status_code, str(exc))
        if error is not None:
            error.__cause__ = exc
            return error

    if isinstance(exc, (requests.Timeout, requests.ConnectionError, TimeoutError, ConnectionError)):
        error = ServerOrNetworkError(f"{type(exc).__name__}: {exc}")
    elif isinstance(exc, (ValueError, KeyError, TypeError)):
        # json decoding and shape probing errors
        error = MalformedResponseError(f"{type(exc).__name__}: {exc}")
    else:
        message = str(exc).lower()
        if any(marker in message for marker in _RATE_LIMIT_MARKERS):
            error = RateLimitedError(str(exc))
        elif any(marker in message for marker in _BLOCKED_MARKERS):
            error = BlockedError(str(exc))
        elif any(marker in message for marker in _NETWORK_MARKERS):
            error = ServerOrNetworkError(str(exc))
        else:
            error = NonRetryableError(f"{type(exc).__name__}: {exc}")

    error.__cause__ = exc
    return error
