"""
Primary Paginated Strategy

Walks the entity's timeline through the paged GraphQL document query.

Features:
- Entity resolution (numeric id, claimed total) before the first page
- Strictly ordered pages: each request carries the previous page's cursor
- Soft-throttle detection: a page that says "no more" while fewer items
  than claimed have arrived is retried on a fresh session from the same
  cursor, up to a cap
- Claim-token refresh every N calls
- Short interruptible pause between pages
"""

import json
import logging
from urllib.parse import urlencode

from ..core.errors import BlockedError, DiscoveryError, MalformedResponseError
from ..core.identifiers import DiscoveryResult
from ..core.pagination import PageResult, PaginationCursor
from ..core.retry_handler import AttemptContext
from .base import (
    DiscoveryStrategy,
    StrategyKind,
    StrategyResult,
    check_graphql,
    decode_json,
    raise_for_status,
)
from .extractors import TIMELINE_EXTRACTORS, first_match
from .profile import resolve_entity

logger = logging.getLogger(__name__)


class PrimaryPaginatedStrategy(DiscoveryStrategy):

    @property
    def kind(self) -> StrategyKind:
        return StrategyKind.PRIMARY_PAGINATED

    def fetch_page(self, attempt: AttemptContext, context, cursor_token) -> PageResult:
        up = context.config.upstream
        entity = context.entity
        session = attempt.session

        headers = context.tokens.build_headers(
            session, referer=up.profile_page_url.format(username=entity.username)
        )
        variables = {
            'id': entity.user_id,
            'first': context.config.pipeline.page_size,
            'after': cursor_token,
        }
        params = {
            'doc_id': up.timeline_doc_id,
            'variables': json.dumps(variables),
            'lsd': headers[up.anti_forgery_header],
        }
        response = context.transport.send(
            'GET',
            f"{up.graphql_url}?{urlencode(params)}",
            headers=headers,
            timeout=attempt.timeout,
        )
        raise_for_status(response, f"timeline page for {entity.username}")

        payload = decode_json(response, "timeline page")
        check_graphql(payload, f"timeline page for {entity.username}")
        if isinstance(payload.get('data'), dict) and 'user' in payload['data'] and payload['data']['user'] is None:
            # Anonymous sessions that were silently logged out get a null user
            raise BlockedError(f"Null user in timeline for {entity.username}, session rotation needed")

        page = first_match(payload, TIMELINE_EXTRACTORS)
        if page is None:
            raise MalformedResponseError(f"Unexpected timeline response structure for {entity.username}")
        return page

    def run(self, context) -> StrategyResult:
        entity = context.entity
        cfg = context.config.pipeline

        resolve_entity(context, label=self.name)
        result = StrategyResult(claimed_total=entity.claimed_total)
        if entity.claimed_total == 0:
            logger.info(f"[{entity.username}] Entity claims no items, nothing to page through")
            return result

        target = context.effective_target
        collected = DiscoveryResult(cfg.identifier_pattern)
        cursor = PaginationCursor(claimed_total=entity.claimed_total)

        while len(collected) < target:
            context.check_cancelled()
            token = cursor.token
            try:
                page = context.retry.execute(
                    lambda attempt: self.fetch_page(attempt, context, token),
                    context,
                    label=self.name,
                )
            except DiscoveryError as e:
                if len(collected) == 0:
                    raise
                logger.warning(
                    f"[{entity.username}] Pagination stopped at batch {cursor.batch + 1} "
                    f"with {len(collected)} items: {e}"
                )
                result.error = e
                break

            result.pages += 1
            added = collected.add_many(page.items)
            if page.claimed_total is not None and cursor.claimed_total is None:
                cursor.claimed_total = page.claimed_total
                entity.claimed_total = page.claimed_total
            claimed = cursor.claimed_total

            logger.info(
                f"[{entity.username}] Batch {cursor.batch + 1}: +{added} items "
                f"(total: {len(collected)}/{claimed if claimed is not None else '?'})"
            )

            stalled = page.end_cursor is not None and page.end_cursor == token and not added
            if not page.is_terminal and not stalled:
                cursor.advance(page, added)
                if context.session is not None:
                    context.tokens.refresh_if_due(context.session)
                if len(collected) < target:
                    context.pause(cfg.page_pause_range)
                continue

            # Remote says there is nothing more; believe it only if the counts agree
            if claimed is not None and len(collected) < claimed and len(collected) < target:
                if result.throttle_retries < cfg.throttle_retry_cap:
                    result.throttle_retries += 1
                    context.metrics.record_throttle_retry()
                    logger.info(
                        f"[{entity.username}] Throttled at {len(collected)}/{claimed} items, rotating session "
                        f"(retry {result.throttle_retries}/{cfg.throttle_retry_cap}), "
                        f"resuming from cursor {token or 'start'}"
                    )
                    context.retire_session("soft throttle")
                    continue

                logger.warning(
                    f"[{entity.username}] Gave up after {result.throttle_retries} throttle retries "
                    f"at {len(collected)}/{claimed} items"
                )
                break

            cursor.advance(page, added)
            logger.info(
                f"[{entity.username}] Reached genuine end of collection: "
                f"{len(collected)}/{claimed if claimed is not None else 'unknown'}"
            )
            break

        result.items = collected.items
        result.claimed_total = cursor.claimed_total
        context.metrics.record_rejected(collected.rejected)
        return result
