"""
Persistence: the append-only record sink and per-entity discovery state.

Features:
- JSON-lines sink, one append per record, safe across worker threads
- Discovery state per entity (claimed total, discovered and extracted
  identifiers) so a rerun can skip Phase 1 for entities already done
"""

import json
import time
import logging
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class JsonlSink:
    """Append-only JSON-lines file"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.count = 0
        self._lock = Lock()

    def append(self, record: Dict):
        line = json.dumps(record, ensure_ascii=False)
        with self._lock:
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(line + "\n")
            self.count += 1

    def read_all(self) -> List[Dict]:
        if not self.path.exists():
            return []
        with open(self.path, 'r', encoding='utf-8') as f:
            return [json.loads(line) for line in f if line.strip()]


class DiscoveryStateStore:
    """
    Per-entity discovery/extraction state, persisted as one JSON document.

    Phase 1 is only skipped for an entity whose stored list is complete and
    not suspiciously small against its claimed total.
    """

    SMALL_RATIO = 0.6
    SMALL_CAP = 100
    SMALL_UNKNOWN = 20

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = Lock()
        self.state: Dict[str, Dict] = {}
        if self.path.exists():
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    self.state = json.load(f)
                logger.info(f"Loaded discovery state for {len(self.state)} entities from {self.path}")
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable discovery state {self.path}: {e}")
                self.state = {}

    def get(self, username: str) -> Dict:
        with self._lock:
            return dict(self.state.get(username) or {})

    def discovered(self, username: str) -> List[str]:
        return list(self.get(username).get('discovered') or [])

    def extracted(self, username: str) -> List[str]:
        return list(self.get(username).get('extracted') or [])

    def needs_discovery(self, username: str) -> bool:
        entry = self.get(username)
        discovered = entry.get('discovered') or []
        if not entry.get('completed') or not discovered:
            return True

        expected = entry.get('expected_count')
        if expected:
            too_small = len(discovered) < min(int(expected * self.SMALL_RATIO), self.SMALL_CAP)
        else:
            too_small = len(discovered) < self.SMALL_UNKNOWN
        if too_small:
            logger.info(
                f"[{username}] Stored discovery list looks too small "
                f"({len(discovered)} vs expected {expected or 'unknown'}), rediscovering"
            )
        return too_small

    def save_discovery(
        self,
        username: str,
        items: List[str],
        status: str,
        expected_count: Optional[int] = None,
        user_id: Optional[str] = None,
    ):
        with self._lock:
            entry = self.state.setdefault(username, {})
            entry.update({
                'discovered': list(items),
                'status': status,
                'completed': status != 'exhausted',
                'expected_count': expected_count,
                'user_id': user_id,
                'updated_at': time.time(),
            })
            entry.setdefault('extracted', [])
            self._flush()

    def mark_extracted(self, username: str, identifiers: Iterable[str]):
        with self._lock:
            entry = self.state.setdefault(username, {})
            extracted = entry.setdefault('extracted', [])
            seen = set(extracted)
            for identifier in identifiers:
                if identifier not in seen:
                    extracted.append(identifier)
                    seen.add(identifier)
            self._flush()

    def _flush(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(self.state, f, ensure_ascii=False, indent=2)
        tmp.replace(self.path)
