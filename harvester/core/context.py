"""
Per-Unit-of-Work Discovery Context

One context per entity discovery (or per extracted item). It carries the
shared components (credential store, token lifecycle, throttling, retry
policy, transport) plus the state that belongs to this unit of work only:
the session currently serving it, its recent auth failures and its metrics.
"""

import random
import time
import logging
from collections import deque
from dataclasses import dataclass
from threading import Event
from typing import Callable, Deque, Optional, Tuple

from ..config import HarvesterConfig
from .credential_store import CredentialStore, Session
from .errors import JobCancelled
from .identifiers import DiscoveryResult
from .metrics import DiscoveryMetrics
from .throttling import ThrottlingController, interruptible_sleep
from .token_lifecycle import TokenLifecycle
from .transport import parse_document

logger = logging.getLogger(__name__)


@dataclass
class EntityRef:
    """The target whose collection is being discovered"""
    username: str
    user_id: Optional[str] = None
    claimed_total: Optional[int] = None
    input_url: Optional[str] = None


class DiscoveryContext:
    """Everything a strategy or retried operation needs for one unit of work"""

    def __init__(
        self,
        entity: EntityRef,
        store: CredentialStore,
        tokens: TokenLifecycle,
        throttling: ThrottlingController,
        retry,
        transport,
        config: Optional[HarvesterConfig] = None,
        target_count: Optional[int] = None,
        parser: Callable = parse_document,
        metrics: Optional[DiscoveryMetrics] = None,
        cancel_event: Optional[Event] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.entity = entity
        self.store = store
        self.tokens = tokens
        self.throttling = throttling
        self.retry = retry
        self.transport = transport
        self.config = config or HarvesterConfig()
        self.target_count = target_count
        self.parser = parser
        self.metrics = metrics or DiscoveryMetrics(entity.username)
        self.cancel_event = cancel_event or Event()
        self.clock = clock
        self.rng = rng or random.Random()

        self.result = DiscoveryResult(self.config.pipeline.identifier_pattern)
        self.session: Optional[Session] = None
        self.refresh_pending = False
        self._predecessor: Optional[str] = None
        self._previous_set: Optional[str] = None
        self._auth_failures: Deque[float] = deque()

    # -- sessions --------------------------------------------------------

    def ensure_session(self) -> Session:
        """Current live session, opening a new one if needed (may raise PoolExhaustedError)"""
        if self.session is not None and not self.session.retired:
            return self.session
        if self.session is not None:
            self._predecessor = self.session.id
            self._previous_set = _set_id(self.session)
        # Rotation moves to a different cookie set whenever one is free
        self.session = self.store.open_session(exclude=self._previous_set)
        self._previous_set = None
        if self._predecessor:
            # Pacing history follows the unit of work onto the new session
            self.throttling.handover(self._predecessor, self.session.id)
            self._predecessor = None
        logger.debug(f"[{self.entity.username}] Now on {self.session.id}")
        return self.session

    def retire_session(self, reason: str = ""):
        """Retire the serving session; the next ensure_session() opens a fresh one"""
        if self.session is None:
            return
        session = self.session
        self.session = None
        self._predecessor = session.id
        self._previous_set = _set_id(session)
        self.store.retire_session(session)
        self.metrics.record_rotation()
        if reason:
            logger.info(f"[{self.entity.username}] Rotated {session.id}: {reason}")

    def release(self):
        """Give the session's cookie set back at the end of the unit of work"""
        if self._predecessor:
            self.throttling.forget(self._predecessor)
            self._predecessor = None
        if self.session is not None:
            session = self.session
            self.session = None
            self.store.retire_session(session)
            self.throttling.forget(session.id)

    # -- auth failure window ----------------------------------------------

    def note_auth_failure(self) -> bool:
        """
        Record a blocked classification. Returns True once the threshold is
        reached inside the trailing window, which arms a proactive refresh.
        """
        cfg = self.config.retry
        now = self.clock()
        self._auth_failures.append(now)
        while self._auth_failures and now - self._auth_failures[0] > cfg.auth_failure_window:
            self._auth_failures.popleft()

        if len(self._auth_failures) >= cfg.auth_failure_threshold:
            self._auth_failures.clear()
            self.refresh_pending = True
            return True
        return False

    # -- cancellation ----------------------------------------------------

    def check_cancelled(self):
        if self.cancel_event.is_set():
            raise JobCancelled(f"Cancelled while processing {self.entity.username}")

    def pause(self, delay_range: Tuple[float, float]):
        """Interruptible random pause, e.g. between pages"""
        low, high = delay_range
        interruptible_sleep(self.rng.uniform(low, high), self.cancel_event)

    @property
    def effective_target(self) -> int:
        """Explicit target, else the claimed total, else the configured default"""
        if self.target_count:
            return self.target_count
        if self.entity.claimed_total is not None:
            return self.entity.claimed_total
        return self.config.job.default_target


def _set_id(session: Session) -> Optional[str]:
    return session.credential_set.id if session.credential_set is not None else None
