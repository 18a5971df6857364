import json

from harvester.core.transport import parse_document
from harvester.strategies.extractors import (
    DOCUMENT_EXTRACTORS,
    FEED_EXTRACTORS,
    PROFILE_EXTRACTORS,
    RECORD_EXTRACTORS,
    TIMELINE_EXTRACTORS,
    codes_from_post_links,
    codes_from_text,
    dig,
    first_match,
)

from helpers import timeline_payload


def test_dig_walks_dicts_and_lists():
    payload = {'a': [{'b': 1}]}
    assert dig(payload, 'a', 0, 'b') == 1
    assert dig(payload, 'a', 1, 'b') is None
    assert dig(payload, 'x', 'y') is None
    assert dig("not a dict", 'a') is None


def test_first_match_respects_order():
    calls = []

    def never(payload):
        calls.append('never')
        return None

    def first(payload):
        calls.append('first')
        return 'one'

    def second(payload):
        calls.append('second')
        return 'two'

    assert first_match({}, [never, first, second]) == 'one'
    assert calls == ['never', 'first']
    assert first_match({}, [never]) is None


def test_profile_info_shapes():
    web = {'data': {'user': {'id': 123, 'edge_owner_to_timeline_media': {'count': 42}}}}
    legacy = {'graphql': {'user': {'id': '9', 'edge_owner_to_timeline_media': {'count': '7'}}}}

    info = first_match(web, PROFILE_EXTRACTORS)
    assert (info.user_id, info.claimed_total) == ('123', 42)
    info = first_match(legacy, PROFILE_EXTRACTORS)
    assert (info.user_id, info.claimed_total) == ('9', 7)
    assert first_match({'data': {'user': None}}, PROFILE_EXTRACTORS) is None


def test_timeline_page_from_user_media():
    page = first_match(timeline_payload(['AAAAAAAAAAA'], True, 'cur', 5), TIMELINE_EXTRACTORS)
    assert page.items == ['AAAAAAAAAAA']
    assert page.has_more
    assert page.end_cursor == 'cur'
    assert page.claimed_total == 5


def test_timeline_page_from_feed_connection():
    payload = {'data': {'xdt_api__v1__feed__user_timeline_graphql_connection': {
        'edges': [{'node': {'code': 'BBBBBBBBBBB'}}, {'node': {}}, 'junk'],
        'page_info': {'has_next_page': False, 'end_cursor': ''},
    }}}
    page = first_match(payload, TIMELINE_EXTRACTORS)
    assert page.items == ['BBBBBBBBBBB']
    assert page.end_cursor is None
    assert page.is_terminal


def test_unknown_timeline_shape():
    assert first_match({'data': {'viewer': {}}}, TIMELINE_EXTRACTORS) is None


def test_mobile_feed_shape():
    payload = {'items': [{'code': 'CCCCCCCCCCC'}, {'pk': 1}], 'more_available': True, 'next_max_id': 123}
    page = first_match(payload, FEED_EXTRACTORS)
    assert page.items == ['CCCCCCCCCCC']
    assert page.end_cursor == '123'
    assert not page.is_terminal

    last = first_match({'items': [], 'more_available': True, 'next_max_id': None}, FEED_EXTRACTORS)
    assert last.is_terminal


def test_record_shapes():
    media = {'shortcode': 'DDDDDDDDDDD'}
    assert first_match({'data': {'xdt_shortcode_media': media}}, RECORD_EXTRACTORS) == media
    assert first_match({'data': {'shortcode_media': media}}, RECORD_EXTRACTORS) == media
    assert first_match({'props': {'pageProps': {'postPage': {'media': media}}}}, RECORD_EXTRACTORS) == media
    assert first_match({'data': {'xdt_shortcode_media': None}}, RECORD_EXTRACTORS) is None


def test_document_prefers_shared_data():
    shared = {'entry_data': {'ProfilePage': [{'graphql': {'user': {'edge_owner_to_timeline_media': {
        'edges': [{'node': {'shortcode': 'EEEEEEEEEEE'}}],
        'page_info': {},
    }}}}]}}
    html = (
        f'<html><script>window._sharedData = {json.dumps(shared)};</script>'
        '<a href="/p/FFFFFFFFFFF/">post</a></html>'
    )
    assert first_match(parse_document(html), DOCUMENT_EXTRACTORS) == ['EEEEEEEEEEE']


def test_document_falls_back_to_links_then_text():
    links = parse_document('<a href="/p/GGGGGGGGGGG/">a</a><a href="/explore/">b</a>')
    assert first_match(links, DOCUMENT_EXTRACTORS) == ['GGGGGGGGGGG']

    text = parse_document('<div data-url="https://example.test/p/HHHHHHHHHHH/?x=1"></div>')
    assert codes_from_post_links(text) is None
    assert codes_from_text(text) == ['HHHHHHHHHHH']

    assert first_match(parse_document('<p>nothing here</p>'), DOCUMENT_EXTRACTORS) is None
