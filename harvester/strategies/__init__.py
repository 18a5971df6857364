# Discovery strategies, tried in order by the pipeline
from typing import Dict, List, Optional, Sequence

from .base import DiscoveryStrategy, SingleShotStrategy, StrategyKind, StrategyResult
from .primary import PrimaryPaginatedStrategy
from .alternate import AlternateShapeStrategy
from .document_scrape import DocumentScrapeStrategy
from .static_fallback import StaticFallbackStrategy

STRATEGIES = {
    StrategyKind.PRIMARY_PAGINATED.value: PrimaryPaginatedStrategy,
    StrategyKind.ALTERNATE_SHAPE.value: AlternateShapeStrategy,
    StrategyKind.DOCUMENT_SCRAPE.value: DocumentScrapeStrategy,
    StrategyKind.STATIC_FALLBACK.value: StaticFallbackStrategy,
}


def build_strategies(
    names: Sequence[str],
    known_identifiers: Optional[Dict[str, List[str]]] = None,
) -> List[DiscoveryStrategy]:
    """Instantiate strategies by name, in the given order"""
    strategies = []
    for name in names:
        if name not in STRATEGIES:
            raise ValueError(f"Unknown discovery strategy: {name} (known: {', '.join(STRATEGIES)})")
        if name == StrategyKind.STATIC_FALLBACK.value:
            strategies.append(StaticFallbackStrategy(known_identifiers))
        else:
            strategies.append(STRATEGIES[name]())
    return strategies


__all__ = [
    'DiscoveryStrategy',
    'SingleShotStrategy',
    'StrategyKind',
    'StrategyResult',
    'PrimaryPaginatedStrategy',
    'AlternateShapeStrategy',
    'DocumentScrapeStrategy',
    'StaticFallbackStrategy',
    'STRATEGIES',
    'build_strategies',
]
