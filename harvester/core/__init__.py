# Core discovery infrastructure
from .errors import (
    DiscoveryError,
    ErrorKind,
    JobCancelled,
    PoolExhaustedError,
    classify,
    error_for_status,
)
from .transport import HttpResponse, RequestsTransport, parse_document
from .credential_store import CredentialSet, CredentialStatus, CredentialStore, Session, TokenSet
from .cookie_factory import GuestCookieFactory
from .token_lifecycle import TokenLifecycle
from .throttling import ThrottlingController
from .retry_handler import AttemptContext, RetryOrchestrator, calculate_backoff
from .pagination import PageResult, PaginationCursor
from .identifiers import DiscoveryResult, is_valid_identifier
from .metrics import DiscoveryMetrics
from .context import DiscoveryContext, EntityRef
from .pipeline import DiscoveryOutcome, DiscoveryPipeline, DiscoveryStatus

__all__ = [
    'DiscoveryError',
    'ErrorKind',
    'JobCancelled',
    'PoolExhaustedError',
    'classify',
    'error_for_status',
    'HttpResponse',
    'RequestsTransport',
    'parse_document',
    'CredentialSet',
    'CredentialStatus',
    'CredentialStore',
    'Session',
    'TokenSet',
    'GuestCookieFactory',
    'TokenLifecycle',
    'ThrottlingController',
    'AttemptContext',
    'RetryOrchestrator',
    'calculate_backoff',
    'PageResult',
    'PaginationCursor',
    'DiscoveryResult',
    'is_valid_identifier',
    'DiscoveryMetrics',
    'DiscoveryContext',
    'EntityRef',
    'DiscoveryOutcome',
    'DiscoveryPipeline',
    'DiscoveryStatus',
]
