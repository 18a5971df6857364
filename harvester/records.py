"""
Record mapping: raw upstream post node -> output record.

Pure and stateless. Unknown or missing fields map to empty values rather
than raising; a node without a short code is not a record.
"""

import re
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

HASHTAG_RE = re.compile(r'#(\w+)')
MENTION_RE = re.compile(r'@([\w.]+)')

POST_URL = "https://www.instagram.com/p/{shortcode}/"


def _count(node: Dict, edge: str) -> int:
    value = (node.get(edge) or {}).get('count')
    return value if isinstance(value, int) else 0


def _caption(node: Dict) -> str:
    edges = (node.get('edge_media_to_caption') or {}).get('edges') or []
    if edges and isinstance(edges[0], dict):
        return (edges[0].get('node') or {}).get('text') or ''
    return ''


def _children(node: Dict) -> List[Dict]:
    edges = (node.get('edge_sidecar_to_children') or {}).get('edges') or []
    return [edge['node'] for edge in edges if isinstance(edge, dict) and isinstance(edge.get('node'), dict)]


def get_post_type(node: Dict) -> str:
    """Sidecar (carousel), Video or Image"""
    if str(node.get('__typename', '')).endswith('Sidecar') or len(_children(node)) > 1:
        return 'Sidecar'
    if node.get('is_video'):
        return 'Video'
    return 'Image'


def _duration_ms(seconds) -> Optional[float]:
    if not seconds:
        return None
    return seconds * 1000


def parse_timestamp(value) -> Optional[str]:
    """Epoch seconds -> ISO-8601 UTC"""
    if value in (None, ''):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def map_post_record(node: Dict, username: str, input_url: Optional[str] = None) -> Optional[Dict]:
    """
    Map one raw post node to the output schema.
    Returns None if the node has no short code.
    """
    if not isinstance(node, dict):
        return None
    shortcode = node.get('shortcode') or node.get('code')
    if not shortcode:
        logger.debug("Skipping post node without a short code")
        return None

    caption = _caption(node)
    display_url = node.get('display_url')
    dimensions = node.get('dimensions') or {}

    record = {
        'id': node.get('id'),
        'type': get_post_type(node),
        'shortCode': shortcode,
        'url': POST_URL.format(shortcode=shortcode),
        'timestamp': parse_timestamp(node.get('taken_at_timestamp') or node.get('taken_at')),
        'caption': caption,
        'alt': node.get('accessibility_caption'),
        'hashtags': HASHTAG_RE.findall(caption),
        'mentions': MENTION_RE.findall(caption),
        'sponsors': [],
        'likesCount': _count(node, 'edge_media_preview_like') or _count(node, 'edge_liked_by'),
        'commentsCount': _count(node, 'edge_media_to_comment') or _count(node, 'edge_media_to_parent_comment'),
        'videoViewCount': node.get('video_view_count') or 0,
        'displayUrl': display_url,
        'images': [display_url] if display_url else [],
        'videoUrl': node.get('video_url'),
        'videoDuration': _duration_ms(node.get('video_duration')),
        'dimensionsHeight': dimensions.get('height') or 0,
        'dimensionsWidth': dimensions.get('width') or 0,
        'paidPartnership': bool(node.get('is_paid_partnership')),
        'isSponsored': bool(node.get('is_sponsored_tag')),
        'inputUrl': input_url,
        'username': username,
    }

    children = _children(node)
    if record['type'] == 'Sidecar' and children:
        record['images'] = [child.get('display_url') for child in children if child.get('display_url')]
        video = next((child for child in children if child.get('is_video') and child.get('video_url')), None)
        if video is not None:
            record['videoUrl'] = video['video_url']
            record['videoDuration'] = _duration_ms(video.get('video_duration'))
            record['videoViewCount'] = video.get('video_view_count') or 0

    # Tagged business or verified accounts
    tagged = (node.get('edge_media_to_tagged_user') or {}).get('edges') or []
    for edge in tagged:
        user = ((edge or {}).get('node') or {}).get('user') or {}
        if user.get('username') and (user.get('is_business_account') or user.get('is_verified')):
            record['sponsors'].append(user['username'])

    return record


def is_newer_than(record: Dict, cutoff: Optional[datetime]) -> bool:
    """Date filter for "only newer than"; records without a timestamp pass"""
    if cutoff is None or not record.get('timestamp'):
        return True
    if cutoff.tzinfo is None:
        cutoff = cutoff.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(record['timestamp']) >= cutoff
