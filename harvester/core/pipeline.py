"""
Discovery Pipeline

Top-level state machine for one entity:

    TryingStrategy(i) -> MergingResults -> TryingStrategy(i+1) ... -> Done

Features:
- Ordered strategy fallback (primary -> alternate -> scrape -> static)
- Results merged into one validated, deduplicated DiscoveryResult
- Early exit once the target count is reached
- Per-strategy failures absorbed; only the final status is reported
- Outcome callback for the job driver's summary logging
"""

import random
import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from threading import Event
from typing import Callable, Dict, List, Optional, Sequence, Union

from ..config import HarvesterConfig
from .context import DiscoveryContext, EntityRef
from .credential_store import CredentialStore
from .errors import DiscoveryError, JobCancelled
from .metrics import DiscoveryMetrics
from .retry_handler import RetryOrchestrator
from .throttling import ThrottlingController
from .token_lifecycle import TokenLifecycle
from .transport import parse_document

logger = logging.getLogger(__name__)


class DiscoveryStatus(Enum):
    SUCCESS = "success"       # Target count reached
    PARTIAL = "partial"       # Some items, not all
    EXHAUSTED = "exhausted"   # Nothing after every strategy


class PipelineState(Enum):
    TRYING_STRATEGY = "trying_strategy"
    MERGING_RESULTS = "merging_results"
    DONE = "done"


@dataclass
class DiscoveryOutcome:
    """What discover() hands back for one entity"""
    entity: EntityRef
    items: List[str]
    status: DiscoveryStatus
    target: int
    claimed_total: Optional[int] = None
    contributing: Dict[str, int] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    metrics: Dict = field(default_factory=dict)

    @property
    def unique_count(self) -> int:
        return len(set(self.items))

    def to_dict(self) -> Dict:
        return {
            'username': self.entity.username,
            'user_id': self.entity.user_id,
            'status': self.status.value,
            'items': list(self.items),
            'target': self.target,
            'claimed_total': self.claimed_total,
            'contributing': dict(self.contributing),
            'errors': dict(self.errors),
        }


class DiscoveryPipeline:
    """
    Owns the shared resilience components and runs discover() per entity.
    Safe to call discover() from many threads at once.
    """

    def __init__(
        self,
        store: CredentialStore,
        transport,
        config: Optional[HarvesterConfig] = None,
        tokens: Optional[TokenLifecycle] = None,
        throttling: Optional[ThrottlingController] = None,
        retry: Optional[RetryOrchestrator] = None,
        parser: Callable = parse_document,
        cancel_event: Optional[Event] = None,
        on_outcome: Optional[Callable[[EntityRef, DiscoveryOutcome], None]] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or HarvesterConfig()
        self.store = store
        self.transport = transport
        self.clock = clock
        self.rng = rng or random.Random()
        self.tokens = tokens or TokenLifecycle(
            store, transport, self.config.upstream, self.config.tokens, parser=parser, clock=clock,
        )
        self.throttling = throttling or ThrottlingController(self.config.throttle, clock=clock, rng=self.rng)
        self.retry = retry or RetryOrchestrator(self.config.retry, rng=self.rng)
        self.parser = parser
        self.cancel_event = cancel_event or Event()
        self.on_outcome = on_outcome

    def new_context(self, entity: EntityRef, target_count: Optional[int] = None) -> DiscoveryContext:
        return DiscoveryContext(
            entity=entity,
            store=self.store,
            tokens=self.tokens,
            throttling=self.throttling,
            retry=self.retry,
            transport=self.transport,
            config=self.config,
            target_count=target_count,
            parser=self.parser,
            metrics=DiscoveryMetrics(entity.username),
            cancel_event=self.cancel_event,
            clock=self.clock,
            rng=self.rng,
        )

    def discover(
        self,
        entity_ref: Union[str, EntityRef],
        target_count: Optional[int] = None,
        strategies: Optional[Sequence] = None,
    ) -> DiscoveryOutcome:
        """
        Run the strategy chain for one entity.

        Never raises for upstream failures: they end in a PARTIAL or
        EXHAUSTED outcome. JobCancelled propagates.
        """
        entity = EntityRef(entity_ref) if isinstance(entity_ref, str) else entity_ref
        if strategies is None:
            from ..strategies import build_strategies
            strategies = build_strategies(self.config.job.strategies, self.config.job.known_identifiers)

        context = self.new_context(entity, target_count)
        result = context.result
        contributing: Dict[str, int] = {}
        errors: Dict[str, str] = {}

        logger.info(
            f"[{entity.username}] Starting discovery "
            f"(target: {target_count or 'claimed total'}, strategies: {', '.join(s.name for s in strategies)})"
        )

        try:
            for index, strategy in enumerate(strategies):
                context.check_cancelled()
                self._log_state(entity, PipelineState.TRYING_STRATEGY, f"{index} ({strategy.name})")

                try:
                    outcome = strategy.run(context)
                except JobCancelled:
                    raise
                except DiscoveryError as e:
                    errors[strategy.name] = f"{e.kind.value}: {e}"
                    logger.warning(
                        f"[{entity.username}] Strategy {strategy.name} exhausted after "
                        f"{e.attempts or 1} attempt(s): {e}"
                    )
                    continue
                except Exception as e:
                    errors[strategy.name] = f"{type(e).__name__}: {e}"
                    logger.error(f"[{entity.username}] Strategy {strategy.name} failed unexpectedly: {e}")
                    continue

                if outcome.error is not None:
                    errors[strategy.name] = f"{outcome.error.kind.value}: {outcome.error}"
                if outcome.claimed_total is not None and entity.claimed_total is None:
                    entity.claimed_total = outcome.claimed_total

                if not outcome.items:
                    logger.warning(f"[{entity.username}] Strategy {strategy.name} found no items")
                    if entity.claimed_total == 0:
                        logger.info(f"[{entity.username}] Entity claims zero items, stopping")
                        break
                    continue

                self._log_state(entity, PipelineState.MERGING_RESULTS, strategy.name)
                rejected_before = result.rejected
                added = result.add_many(outcome.items)
                context.metrics.record_rejected(result.rejected - rejected_before)
                context.metrics.record_items(strategy.name, added)
                if added:
                    contributing[strategy.name] = added

                target = context.effective_target
                logger.info(
                    f"[{entity.username}] Strategy {strategy.name}: +{added} new items "
                    f"(total: {len(result)}/{target})"
                )
                if len(result) >= target:
                    logger.info(f"[{entity.username}] Reached target with {strategy.name}, skipping remaining strategies")
                    break
        finally:
            context.release()

        target = context.effective_target
        result.truncate(target)
        if target and len(result) >= target:
            status = DiscoveryStatus.SUCCESS
        elif len(result) > 0:
            status = DiscoveryStatus.PARTIAL
        else:
            status = DiscoveryStatus.EXHAUSTED

        self._log_state(entity, PipelineState.DONE, status.value)
        context.metrics.finish(status.value)
        outcome = DiscoveryOutcome(
            entity=entity,
            items=result.items,
            status=status,
            target=target,
            claimed_total=entity.claimed_total,
            contributing=contributing,
            errors=errors,
            metrics=context.metrics.snapshot(),
        )

        if status == DiscoveryStatus.EXHAUSTED:
            logger.error(f"[{entity.username}] All discovery strategies exhausted with no items")
        logger.info(context.metrics.get_summary())

        if self.on_outcome:
            try:
                self.on_outcome(entity, outcome)
            except Exception as e:
                logger.error(f"Outcome callback failed: {e}")

        return outcome

    def _log_state(self, entity: EntityRef, state: PipelineState, detail: str = ""):
        logger.debug(f"[{entity.username}] -> {state.value}{f' {detail}' if detail else ''}")
