"""
Discovery Metrics

Per-entity counters the job driver turns into structured log lines:
attempts per strategy, classified errors per strategy and kind, throttle
retries, rejected identifiers and the final status.
"""

import time
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class StrategyMetrics:
    """Counters for one strategy on one entity"""
    attempts: int = 0
    successes: int = 0
    items: int = 0
    errors: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


class DiscoveryMetrics:
    """Thread-safe counters for one entity's discovery run"""

    def __init__(self, entity: str = ""):
        self.entity = entity
        self.strategies: Dict[str, StrategyMetrics] = {}
        self.throttle_retries = 0
        self.rejected_identifiers = 0
        self.session_rotations = 0
        self.proactive_refreshes = 0
        self.final_status: Optional[str] = None
        self.started_at = time.time()
        self.finished_at: Optional[float] = None
        self._lock = Lock()

    def _get(self, strategy: str) -> StrategyMetrics:
        if strategy not in self.strategies:
            self.strategies[strategy] = StrategyMetrics()
        return self.strategies[strategy]

    def record_attempt(self, strategy: str):
        with self._lock:
            self._get(strategy).attempts += 1

    def record_success(self, strategy: str):
        with self._lock:
            self._get(strategy).successes += 1

    def record_error(self, strategy: str, kind: str):
        with self._lock:
            self._get(strategy).errors[kind] += 1

    def record_items(self, strategy: str, count: int):
        with self._lock:
            self._get(strategy).items += count

    def record_throttle_retry(self):
        with self._lock:
            self.throttle_retries += 1

    def record_rejected(self, count: int = 1):
        with self._lock:
            self.rejected_identifiers += count

    def record_rotation(self):
        with self._lock:
            self.session_rotations += 1

    def record_refresh(self):
        with self._lock:
            self.proactive_refreshes += 1

    def finish(self, status: str):
        with self._lock:
            self.final_status = status
            self.finished_at = time.time()

    def snapshot(self) -> Dict:
        """Plain-dict view for logging and the summary record"""
        with self._lock:
            elapsed = (self.finished_at or time.time()) - self.started_at
            return {
                'entity': self.entity,
                'status': self.final_status,
                'elapsed': round(elapsed, 2),
                'throttle_retries': self.throttle_retries,
                'rejected_identifiers': self.rejected_identifiers,
                'session_rotations': self.session_rotations,
                'proactive_refreshes': self.proactive_refreshes,
                'strategies': {
                    name: {
                        'attempts': m.attempts,
                        'successes': m.successes,
                        'items': m.items,
                        'errors': dict(m.errors),
                    }
                    for name, m in self.strategies.items()
                },
            }

    def get_summary(self) -> str:
        """Human-readable one-liner"""
        snap = self.snapshot()
        parts = []
        for name, m in snap['strategies'].items():
            errors = ", ".join(f"{k}={v}" for k, v in sorted(m['errors'].items()))
            parts.append(f"{name}: {m['items']} items/{m['attempts']} attempts" + (f" ({errors})" if errors else ""))
        return (
            f"[{self.entity}] {snap['status']} in {snap['elapsed']:.1f}s | "
            + (" | ".join(parts) or "no strategies run")
            + f" | throttle retries: {snap['throttle_retries']}, rejected: {snap['rejected_identifiers']}"
        )
