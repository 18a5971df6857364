"""
Response-Shape Extractors

The upstream answers the same question in several JSON layouts depending on
endpoint and rollout. Each extractor understands exactly one layout and
returns None for anything else; callers try them in order and take the
first match.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, TypeVar

from ..core.pagination import PageResult

logger = logging.getLogger(__name__)

T = TypeVar('T')

SHARED_DATA_RE = re.compile(r'window\._sharedData\s*=\s*({.*?});', re.DOTALL)
POST_HREF_RE = re.compile(r'^/p/([A-Za-z0-9_-]{11})/')
POST_PATH_RE = re.compile(r'/p/([A-Za-z0-9_-]{11})/')


def dig(payload: Any, *path) -> Any:
    """Walk nested dicts/lists, None on the first missing step"""
    current = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
        if current is None:
            return None
    return current


def first_match(payload: Any, extractors: Sequence[Callable[[Any], Optional[T]]]) -> Optional[T]:
    """Result of the first extractor that recognises the payload"""
    for extractor in extractors:
        result = extractor(payload)
        if result is not None:
            logger.debug(f"Response shape matched {extractor.__name__}")
            return result
    return None


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# -- profile info --------------------------------------------------------

@dataclass
class ProfileInfo:
    user_id: str
    claimed_total: Optional[int] = None


def profile_from_web_info(payload) -> Optional[ProfileInfo]:
    """{"data": {"user": {"id", "edge_owner_to_timeline_media": {"count"}}}}"""
    user = dig(payload, 'data', 'user')
    if not isinstance(user, dict) or not user.get('id'):
        return None
    return ProfileInfo(
        user_id=str(user['id']),
        claimed_total=_as_int(dig(user, 'edge_owner_to_timeline_media', 'count')),
    )


def profile_from_graphql_user(payload) -> Optional[ProfileInfo]:
    """{"graphql": {"user": {...}}} as embedded in older profile documents"""
    user = dig(payload, 'graphql', 'user')
    if not isinstance(user, dict) or not user.get('id'):
        return None
    return ProfileInfo(
        user_id=str(user['id']),
        claimed_total=_as_int(dig(user, 'edge_owner_to_timeline_media', 'count')),
    )


PROFILE_EXTRACTORS = [profile_from_web_info, profile_from_graphql_user]


# -- timeline pages ------------------------------------------------------

def _page_from_media_connection(media) -> Optional[PageResult]:
    if not isinstance(media, dict) or not isinstance(media.get('edges'), list):
        return None
    page_info = media.get('page_info') or {}
    items = []
    for edge in media['edges']:
        node = edge.get('node') if isinstance(edge, dict) else None
        if isinstance(node, dict):
            code = node.get('shortcode') or node.get('code')
            if code:
                items.append(code)
    return PageResult(
        items=items,
        has_more=bool(page_info.get('has_next_page')),
        end_cursor=page_info.get('end_cursor') or None,
        claimed_total=_as_int(media.get('count')),
    )


def timeline_from_user_media(payload) -> Optional[PageResult]:
    """data.user.edge_owner_to_timeline_media"""
    return _page_from_media_connection(dig(payload, 'data', 'user', 'edge_owner_to_timeline_media'))


def timeline_from_feed_connection(payload) -> Optional[PageResult]:
    """data.xdt_api__v1__feed__user_timeline_graphql_connection (newer web layout)"""
    return _page_from_media_connection(
        dig(payload, 'data', 'xdt_api__v1__feed__user_timeline_graphql_connection')
    )


def timeline_from_mobile_feed(payload) -> Optional[PageResult]:
    """{"items": [{"code"}], "more_available", "next_max_id"}"""
    if not isinstance(payload, dict) or not isinstance(payload.get('items'), list):
        return None
    items = []
    for item in payload['items']:
        if isinstance(item, dict):
            code = item.get('code') or item.get('shortcode')
            if code:
                items.append(code)
    next_max_id = payload.get('next_max_id')
    return PageResult(
        items=items,
        has_more=bool(payload.get('more_available') and next_max_id),
        end_cursor=str(next_max_id) if next_max_id else None,
    )


def timeline_from_shared_data(payload) -> Optional[PageResult]:
    """entry_data.ProfilePage[0].graphql.user.edge_owner_to_timeline_media"""
    return _page_from_media_connection(
        dig(payload, 'entry_data', 'ProfilePage', 0, 'graphql', 'user', 'edge_owner_to_timeline_media')
    )


TIMELINE_EXTRACTORS = [timeline_from_user_media, timeline_from_feed_connection]
FEED_EXTRACTORS = [timeline_from_mobile_feed, timeline_from_user_media]


# -- single records ------------------------------------------------------

def record_from_shortcode_media(payload) -> Optional[dict]:
    """data.xdt_shortcode_media, or the older data.shortcode_media"""
    media = dig(payload, 'data', 'xdt_shortcode_media') or dig(payload, 'data', 'shortcode_media')
    return media if isinstance(media, dict) else None


def record_from_page_props(payload) -> Optional[dict]:
    """props.pageProps.postPage.media / props.pageProps.graphql.shortcode_media"""
    media = (
        dig(payload, 'props', 'pageProps', 'postPage', 'media')
        or dig(payload, 'props', 'pageProps', 'graphql', 'shortcode_media')
    )
    return media if isinstance(media, dict) else None


RECORD_EXTRACTORS = [record_from_shortcode_media, record_from_page_props]


# -- documents -----------------------------------------------------------

def codes_from_shared_data(document) -> Optional[List[str]]:
    """Identifiers from the window._sharedData blob embedded in a script tag"""
    for script in document.find_all('script'):
        text = script.string or script.get_text() or ''
        if 'window._sharedData' not in text:
            continue
        match = SHARED_DATA_RE.search(text)
        if not match:
            continue
        try:
            shared = json.loads(match.group(1))
        except ValueError as e:
            logger.debug(f"Unparseable _sharedData blob: {e}")
            continue
        page = timeline_from_shared_data(shared)
        if page is not None and page.items:
            return page.items
    return None


def codes_from_post_links(document) -> Optional[List[str]]:
    """Identifiers from <a href="/p/XXXXXXXXXXX/"> links"""
    codes = []
    for link in document.select('a[href^="/p/"]'):
        match = POST_HREF_RE.match(link.get('href', ''))
        if match:
            codes.append(match.group(1))
    return codes or None


def codes_from_text(document) -> Optional[List[str]]:
    """Identifiers from /p/XXXXXXXXXXX/ paths anywhere in the document"""
    codes = POST_PATH_RE.findall(str(document))
    return codes or None


DOCUMENT_EXTRACTORS = [codes_from_shared_data, codes_from_post_links, codes_from_text]
