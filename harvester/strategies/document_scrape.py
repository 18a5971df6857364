"""
Document-Scrape Strategy: parse the public profile page.

Tries the embedded _sharedData blob, then post links, then any /p/ path in
the markup. The last two are heuristics and may produce false positives;
identifier validation downstream filters them.
"""

import logging
from typing import List

from ..core.retry_handler import AttemptContext
from .base import SingleShotStrategy, StrategyKind, raise_for_status
from .extractors import DOCUMENT_EXTRACTORS, first_match

logger = logging.getLogger(__name__)


class DocumentScrapeStrategy(SingleShotStrategy):

    @property
    def kind(self) -> StrategyKind:
        return StrategyKind.DOCUMENT_SCRAPE

    def fetch(self, attempt: AttemptContext, context) -> List[str]:
        up = context.config.upstream
        username = context.entity.username
        credential_set = attempt.session.credential_set

        headers = {
            'User-Agent': attempt.session.user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.9',
            'Cache-Control': 'no-cache',
            'Pragma': 'no-cache',
        }
        if credential_set is not None:
            headers['Cookie'] = credential_set.cookie_header

        response = context.transport.send(
            'GET',
            up.profile_page_url.format(username=username),
            headers=headers,
            timeout=attempt.timeout,
        )
        raise_for_status(response, f"profile document for {username}")

        document = context.parser(response.text)
        codes = first_match(document, DOCUMENT_EXTRACTORS) or []
        logger.info(f"[{username}] Document scrape found {len(codes)} candidate identifiers")
        return codes
