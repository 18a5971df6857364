from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from ..core.errors import (
    BlockedError,
    DiscoveryError,
    ErrorKind,
    MalformedResponseError,
    classify,
    error_for_status,
)
from ..core.retry_handler import AttemptContext
from ..core.transport import HttpResponse


class StrategyKind(Enum):
    PRIMARY_PAGINATED = "primary"
    ALTERNATE_SHAPE = "alternate"
    DOCUMENT_SCRAPE = "scrape"
    STATIC_FALLBACK = "static"


@dataclass
class StrategyResult:
    """Candidate identifiers from one strategy run (not yet validated)"""
    items: List[str] = field(default_factory=list)
    claimed_total: Optional[int] = None
    pages: int = 0
    throttle_retries: int = 0
    # Failure that cut a multi-page run short after some pages were accepted
    error: Optional[DiscoveryError] = None


class DiscoveryStrategy(ABC):
    """One way of discovering an entity's collection"""

    @property
    @abstractmethod
    def kind(self) -> StrategyKind:
        pass

    @property
    def name(self) -> str:
        return self.kind.value

    @abstractmethod
    def run(self, context) -> StrategyResult:
        """Discover candidates for context.entity. Raises DiscoveryError on failure."""
        pass


class SingleShotStrategy(DiscoveryStrategy):
    """A strategy that is one retried network operation"""

    @abstractmethod
    def fetch(self, attempt: AttemptContext, context) -> List[str]:
        pass

    def run(self, context) -> StrategyResult:
        items = context.retry.execute(
            lambda attempt: self.fetch(attempt, context),
            context,
            label=self.name,
        )
        return StrategyResult(items=items, pages=1)


# === Response checks shared by the network strategies ===

def raise_for_status(response: HttpResponse, what: str):
    """Raise the classified error for a 4xx/5xx response"""
    error = error_for_status(response.status, f"{what}: HTTP {response.status}")
    if error is not None:
        raise error


def decode_json(response: HttpResponse, what: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise MalformedResponseError(f"{what}: response body is not JSON") from e


def check_graphql(payload: Any, what: str):
    """
    GraphQL reports most failures in-band with a 200. An explicit errors
    list is classified by its message; null data means the request was
    refused.
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError(f"{what}: expected a JSON object")

    errors = payload.get('errors')
    if errors:
        first = errors[0] if isinstance(errors, list) and errors else errors
        message = first.get('message') if isinstance(first, dict) else str(first)
        error = classify(RuntimeError(f"{what}: GraphQL error: {message or 'unknown'}"))
        if error.kind == ErrorKind.NON_RETRYABLE:
            error = MalformedResponseError(str(error))
        raise error

    if 'data' in payload and payload['data'] is None:
        raise BlockedError(f"{what}: null data, request blocked or invalid")
