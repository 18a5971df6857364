"""
Retry Orchestration with Error-Specific Recovery

Wraps one idempotent network operation with bounded retries. Each failure
is classified (see errors.py) and mapped to a recovery action:

- blocked / rate limited: block the cookie set, retire the session, arm a
  proactive token/cookie refresh after repeated auth failures
- server or network: back off
- malformed response: retry once, then escalate
- pool exhausted: back off for at least the mandatory delay
- non-retryable: give up immediately

Jitter is applied before exponentiation so parallel operations do not
synchronize on the same retry instant.
"""

import random
import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from ..config import RetryConfig
from .credential_store import Session
from .errors import DiscoveryError, ErrorKind, JobCancelled, classify
from .throttling import interruptible_sleep

logger = logging.getLogger(__name__)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 15.0,
    jitter_range: Tuple[float, float] = (0.5, 1.5),
    rng: Optional[random.Random] = None,
) -> float:
    """
    base_delay * jitter * 2^(attempt-1), capped at max_delay.

    attempt is 1-based: the delay after the first failure uses 2^0.
    """
    rng = rng or random
    low, high = jitter_range
    jittered = base_delay * rng.uniform(low, high)
    return min(jittered * (2 ** (attempt - 1)), max_delay)


@dataclass
class AttemptContext:
    """What one attempt of an operation gets to work with"""
    number: int
    session: Session
    timeout: float


class RetryOrchestrator:
    """
    Runs operations through throttling, session management and
    classified retries. Shared across threads; all per-call state lives in
    the DiscoveryContext passed to execute().
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or RetryConfig()
        self.rng = rng or random.Random()

    def get_delay(self, attempt: int, kind: Optional[ErrorKind] = None) -> float:
        cfg = self.config
        delay = calculate_backoff(attempt, cfg.base_delay, cfg.max_delay, cfg.jitter_range, self.rng)
        if kind == ErrorKind.POOL_EXHAUSTED:
            delay = max(delay, cfg.pool_exhausted_delay)
        return delay

    def timeout_for(self, attempt: int) -> float:
        return self.config.request_timeout * (self.config.timeout_multiplier ** (attempt - 1))

    def execute(
        self,
        operation: Callable[[AttemptContext], Any],
        context,
        label: str = "operation",
        max_attempts: Optional[int] = None,
    ) -> Any:
        """
        Run operation(attempt) until it succeeds or the attempt budget is spent.

        Raises the last classified DiscoveryError (with .attempts set) on
        failure, JobCancelled if the job is cancelled during any wait.
        """
        max_attempts = max_attempts or self.config.max_attempts
        entity = context.entity.username
        malformed_seen = 0
        last_error: Optional[DiscoveryError] = None

        for attempt in range(1, max_attempts + 1):
            context.check_cancelled()
            session = None
            context.metrics.record_attempt(label)

            try:
                session = context.ensure_session()

                if context.refresh_pending:
                    context.refresh_pending = False
                    context.tokens.refresh(session)
                    context.metrics.record_refresh()

                context.throttling.wait(session, context.cancel_event)
                result = operation(AttemptContext(
                    number=attempt,
                    session=session,
                    timeout=self.timeout_for(attempt),
                ))

            except JobCancelled:
                raise

            except Exception as e:
                error = classify(e)
                error.attempts = attempt
                last_error = error
                context.metrics.record_error(label, error.kind.value)

                if not error.retryable:
                    logger.warning(f"[{entity}] {label}: non-retryable failure: {error}")
                    raise error

                if error.kind == ErrorKind.MALFORMED_RESPONSE:
                    malformed_seen += 1
                    if malformed_seen > self.config.malformed_retries:
                        logger.warning(f"[{entity}] {label}: malformed response again, escalating: {error}")
                        raise error

                if error.kind in (ErrorKind.BLOCKED, ErrorKind.RATE_LIMITED) and session is not None:
                    self._handle_block(context, session, error)

                if attempt >= max_attempts:
                    break

                delay = self.get_delay(attempt, error.kind)
                logger.warning(
                    f"[{entity}] {label}: attempt {attempt}/{max_attempts} failed "
                    f"({error.kind.value}): {error}. Retrying in {delay:.2f}s"
                )
                interruptible_sleep(delay, context.cancel_event)
                continue

            context.throttling.record_outcome(session, False)
            context.store.record_use(session)
            context.metrics.record_success(label)
            if attempt > 1:
                logger.info(f"[{entity}] {label}: succeeded on attempt {attempt}")
            return result

        logger.error(f"[{entity}] {label}: giving up after {max_attempts} attempts: {last_error}")
        raise last_error

    def _handle_block(self, context, session: Session, error: DiscoveryError):
        """Block the cookie set, retire the session, maybe arm a refresh"""
        context.throttling.record_outcome(session, True)
        context.store.record_block(session)
        if session.credential_set is not None:
            context.store.mark_blocked(session.credential_set.id)

        context.retire_session(f"{error.kind.value} ({error.status_code or 'no status'})")

        if error.kind == ErrorKind.BLOCKED and context.note_auth_failure():
            logger.info(
                f"[{context.entity.username}] {self.config.auth_failure_threshold}+ auth failures "
                f"within {self.config.auth_failure_window:.0f}s, refreshing credentials before next attempt"
            )
