"""
Identifier Validation and the Discovery Result

Every strategy may produce false-positive candidates (text scraping in
particular). The validator here is the single gate between a candidate and
the DiscoveryResult.
"""

import re
import logging
from threading import Lock
from typing import Dict, Iterable, List, Optional, Pattern

logger = logging.getLogger(__name__)

DEFAULT_IDENTIFIER_PATTERN = r"[A-Za-z0-9_-]{11}"

_compiled: Dict[str, Pattern] = {}


def _pattern(pattern: str) -> Pattern:
    if pattern not in _compiled:
        _compiled[pattern] = re.compile(pattern)
    return _compiled[pattern]


def is_valid_identifier(candidate, pattern: str = DEFAULT_IDENTIFIER_PATTERN) -> bool:
    """Full-match the candidate against the strict identifier pattern"""
    if not isinstance(candidate, str):
        return False
    return _pattern(pattern).fullmatch(candidate) is not None


def filter_identifiers(candidates: Iterable, pattern: str = DEFAULT_IDENTIFIER_PATTERN) -> List[str]:
    """Valid candidates, order kept, duplicates kept"""
    return [c for c in candidates if is_valid_identifier(c, pattern)]


class DiscoveryResult:
    """
    Insertion-ordered, deduplicated set of validated identifiers for one
    entity. Invalid candidates are dropped before deduplication and only
    counted.
    """

    def __init__(self, pattern: str = DEFAULT_IDENTIFIER_PATTERN):
        self.pattern = pattern
        self._items: Dict[str, None] = {}
        self.rejected = 0
        self._lock = Lock()

    def add(self, candidate) -> bool:
        """Returns True if the candidate was new and valid"""
        with self._lock:
            if not is_valid_identifier(candidate, self.pattern):
                self.rejected += 1
                return False
            if candidate in self._items:
                return False
            self._items[candidate] = None
            return True

    def add_many(self, candidates: Iterable) -> int:
        """Add candidates in order. Returns how many were new."""
        added = 0
        for candidate in candidates:
            if self.add(candidate):
                added += 1
        return added

    def truncate(self, limit: Optional[int]):
        if limit is None:
            return
        with self._lock:
            if len(self._items) > limit:
                self._items = dict.fromkeys(list(self._items)[:limit])

    @property
    def items(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, candidate) -> bool:
        return candidate in self._items
