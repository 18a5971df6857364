"""
Per-Session Adaptive Throttling

Features:
- Human-like base delay drawn from a random range
- Penalty while a session has a recent block on record
- Smaller penalty when requests on a session come too close together
- Penalties decay: a session that goes quiet resumes normal pacing
- Interruptible waits on the shared cancellation event

History is per session, so a healthy session is never slowed down by
another session's blocks.
"""

import random
import time
import logging
from dataclasses import dataclass
from threading import Event, Lock
from typing import Callable, Dict, Optional

from ..config import ThrottleConfig
from .credential_store import Session
from .errors import JobCancelled

logger = logging.getLogger(__name__)


@dataclass
class SessionHistory:
    """What the controller remembers about one session"""
    last_request_at: Optional[float] = None
    last_block_at: Optional[float] = None
    requests: int = 0
    blocks: int = 0


class ThrottlingController:
    """
    Computes and applies the pause before the next request on a session.
    """

    def __init__(
        self,
        config: Optional[ThrottleConfig] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or ThrottleConfig()
        self.clock = clock
        self.rng = rng or random.Random()
        self.history: Dict[str, SessionHistory] = {}
        self._lock = Lock()

    def _get_history(self, session_id: str) -> SessionHistory:
        if session_id not in self.history:
            self.history[session_id] = SessionHistory()
        return self.history[session_id]

    def delay_for(self, session: Session) -> float:
        """Delay in seconds before the next request on this session"""
        cfg = self.config
        with self._lock:
            entry = self._get_history(session.id)
            now = self.clock()

            low, high = cfg.base_delay_range
            delay = self.rng.uniform(low, high)

            if entry.last_block_at is not None and now - entry.last_block_at < cfg.penalty_decay:
                delay += cfg.block_penalty

            if entry.last_request_at is not None and now - entry.last_request_at < cfg.min_spacing:
                delay += cfg.spacing_penalty

            return min(delay, cfg.max_delay)

    def wait(self, session: Session, cancel_event: Optional[Event] = None) -> float:
        """
        Sleep for delay_for(session), then stamp the request time.
        Raises JobCancelled if the cancel event fires during the pause.
        """
        delay = self.delay_for(session)
        interruptible_sleep(delay, cancel_event)

        with self._lock:
            entry = self._get_history(session.id)
            entry.last_request_at = self.clock()
            entry.requests += 1
        return delay

    def record_outcome(self, session: Session, was_blocked: bool):
        """Update the block-recency flag read by the next delay_for()"""
        with self._lock:
            entry = self._get_history(session.id)
            if was_blocked:
                entry.last_block_at = self.clock()
                entry.blocks += 1
                logger.debug(f"Throttle penalty armed for {session.id}")

    def handover(self, old_session_id: str, new_session_id: str):
        """Move a retired session's history onto its replacement"""
        with self._lock:
            entry = self.history.pop(old_session_id, None)
            if entry is not None:
                self.history[new_session_id] = entry

    def forget(self, session_id: str):
        """Drop history for a retired session"""
        with self._lock:
            self.history.pop(session_id, None)

    @property
    def stats(self) -> Dict:
        with self._lock:
            return {
                'tracked_sessions': len(self.history),
                'total_requests': sum(h.requests for h in self.history.values()),
                'total_blocks': sum(h.blocks for h in self.history.values()),
            }


def interruptible_sleep(seconds: float, cancel_event: Optional[Event] = None):
    """time.sleep that returns early with JobCancelled when the event is set"""
    if cancel_event is None:
        if seconds > 0:
            time.sleep(seconds)
        return

    if cancel_event.is_set() or (seconds > 0 and cancel_event.wait(seconds)):
        raise JobCancelled("Cancellation requested during wait")
