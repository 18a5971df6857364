"""
Entity resolution: username -> upstream numeric id and claimed item total.

Runs once per entity through the retry orchestrator; a prefetched id skips
it. The response also seeds the serving session's token set.
"""

import logging

from ..core.errors import MalformedResponseError
from ..core.retry_handler import AttemptContext
from .base import decode_json, raise_for_status
from .extractors import PROFILE_EXTRACTORS, ProfileInfo, first_match

logger = logging.getLogger(__name__)


def fetch_profile_info(attempt: AttemptContext, context) -> ProfileInfo:
    up = context.config.upstream
    username = context.entity.username
    session = attempt.session

    headers = context.tokens.build_headers(session, referer=up.profile_page_url.format(username=username))
    response = context.transport.send(
        'GET',
        up.profile_info_url.format(username=username),
        headers=headers,
        timeout=attempt.timeout,
    )
    raise_for_status(response, f"profile info for {username}")

    context.tokens.extract(response.headers, None, session)

    info = first_match(decode_json(response, "profile info"), PROFILE_EXTRACTORS)
    if info is None:
        raise MalformedResponseError(f"Could not find a user id in the profile response for {username}")
    return info


def resolve_entity(context, label: str = "resolve"):
    """Fill context.entity.user_id and claimed_total unless already known"""
    entity = context.entity
    if entity.user_id:
        return

    info = context.retry.execute(lambda attempt: fetch_profile_info(attempt, context), context, label=label)
    entity.user_id = info.user_id
    if entity.claimed_total is None:
        entity.claimed_total = info.claimed_total
    logger.info(
        f"[{entity.username}] Resolved user id {entity.user_id}, "
        f"claims {entity.claimed_total if entity.claimed_total is not None else 'unknown'} items"
    )
