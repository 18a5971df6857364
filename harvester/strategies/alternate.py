"""
Alternate-Shape Strategy: the mobile feed endpoint.

Different URL, different pagination token (max_id) and a different JSON
layout than the primary timeline query. Bounded to a fixed number of
batches because the endpoint has no claimed total to check against.
"""

import logging
from urllib.parse import urlencode

from ..core.errors import DiscoveryError, MalformedResponseError
from ..core.identifiers import DiscoveryResult
from ..core.pagination import PageResult
from ..core.retry_handler import AttemptContext
from .base import DiscoveryStrategy, StrategyKind, StrategyResult, decode_json, raise_for_status
from .extractors import FEED_EXTRACTORS, first_match
from .profile import resolve_entity

logger = logging.getLogger(__name__)


class AlternateShapeStrategy(DiscoveryStrategy):

    @property
    def kind(self) -> StrategyKind:
        return StrategyKind.ALTERNATE_SHAPE

    def fetch_batch(self, attempt: AttemptContext, context, max_id, count: int) -> PageResult:
        up = context.config.upstream
        entity = context.entity

        params = {'count': count}
        if max_id:
            params['max_id'] = max_id
        response = context.transport.send(
            'GET',
            f"{up.mobile_feed_url.format(user_id=entity.user_id)}?{urlencode(params)}",
            headers=context.tokens.build_headers(attempt.session, mobile=True),
            timeout=attempt.timeout,
        )
        raise_for_status(response, f"mobile feed for {entity.username}")

        page = first_match(decode_json(response, "mobile feed"), FEED_EXTRACTORS)
        if page is None:
            raise MalformedResponseError(f"Unexpected mobile feed structure for {entity.username}")
        return page

    def run(self, context) -> StrategyResult:
        entity = context.entity
        cfg = context.config.pipeline

        resolve_entity(context, label=self.name)
        result = StrategyResult(claimed_total=entity.claimed_total)

        target = context.effective_target
        collected = DiscoveryResult(cfg.identifier_pattern)
        max_id = None

        while len(collected) < target and result.pages < cfg.alternate_max_batches:
            context.check_cancelled()
            count = min(cfg.page_size, target - len(collected))
            try:
                page = context.retry.execute(
                    lambda attempt: self.fetch_batch(attempt, context, max_id, count),
                    context,
                    label=self.name,
                )
            except DiscoveryError as e:
                if len(collected) == 0:
                    raise
                logger.warning(f"[{entity.username}] Mobile feed stopped after {result.pages} batches: {e}")
                result.error = e
                break

            result.pages += 1
            added = collected.add_many(page.items)
            logger.debug(
                f"[{entity.username}] Mobile feed batch {result.pages}: {len(page.items)} items, "
                f"{added} new, total {len(collected)}/{target}"
            )

            if not page.items or page.is_terminal:
                break
            max_id = page.end_cursor
            if len(collected) < target:
                context.pause(cfg.page_pause_range)

        result.items = collected.items
        context.metrics.record_rejected(collected.rejected)
        return result
