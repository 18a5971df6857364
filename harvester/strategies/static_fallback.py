"""
Static Fallback Strategy: operator-supplied known identifiers.

Last resort, no network. By default it only contributes when every other
strategy came back empty, so it never pads a partial live result.
"""

import logging
from typing import Dict, List, Optional

from .base import DiscoveryStrategy, StrategyKind, StrategyResult

logger = logging.getLogger(__name__)


class StaticFallbackStrategy(DiscoveryStrategy):

    def __init__(self, known: Optional[Dict[str, List[str]]] = None, only_when_empty: bool = True):
        self.known = known
        self.only_when_empty = only_when_empty

    @property
    def kind(self) -> StrategyKind:
        return StrategyKind.STATIC_FALLBACK

    def run(self, context) -> StrategyResult:
        username = context.entity.username
        if self.only_when_empty and len(context.result) > 0:
            logger.debug(f"[{username}] Live strategies found items, skipping static fallback")
            return StrategyResult()

        known = self.known if self.known is not None else context.config.job.known_identifiers
        items = list(known.get(username) or known.get('*') or [])
        if items:
            logger.warning(f"[{username}] Using {len(items)} known identifiers from the static fallback")
        else:
            logger.info(f"[{username}] No known identifiers configured")
        return StrategyResult(items=items, claimed_total=context.entity.claimed_total)
