"""
Fakes and payload builders shared by the test modules.
"""

import json
from threading import Lock
from urllib.parse import parse_qs, urlparse

from harvester.core.transport import HttpResponse


def json_response(payload, status=200, headers=None):
    return HttpResponse(status=status, headers=headers or {}, body=json.dumps(payload).encode('utf-8'))


def html_response(html, status=200, headers=None):
    return HttpResponse(status=status, headers=headers or {}, body=html.encode('utf-8'))


def make_codes(count, prefix='C'):
    """count distinct 11-character identifiers"""
    return [f"{prefix}{i:010d}" for i in range(count)]


def profile_payload(user_id='4242', count=None):
    user = {'id': user_id}
    if count is not None:
        user['edge_owner_to_timeline_media'] = {'count': count}
    return {'data': {'user': user}, 'status': 'ok'}


def timeline_payload(codes, has_next=False, end_cursor=None, count=None):
    return {
        'data': {
            'user': {
                'edge_owner_to_timeline_media': {
                    'count': count,
                    'page_info': {'has_next_page': has_next, 'end_cursor': end_cursor},
                    'edges': [{'node': {'shortcode': code}} for code in codes],
                }
            }
        },
        'status': 'ok',
    }


def query_variables(url):
    """Decoded GraphQL variables of a query URL"""
    values = parse_qs(urlparse(url).query).get('variables')
    return json.loads(values[0]) if values else {}


class Route:
    def __init__(self, method, pattern, responses, handler=None, exact=False):
        self.method = method
        self.pattern = pattern
        self.responses = list(responses)
        self.handler = handler
        self.exact = exact
        self.hits = 0

    def matches(self, method, url):
        if method != self.method:
            return False
        return url == self.pattern if self.exact else self.pattern in url


class FakeTransport:
    """
    Scripted send() capability.

    Routes are matched in registration order. A route answers with its
    handler, or pops its queued responses (the last one repeats). Queued
    exceptions are raised. HEAD requests without a route get an empty 200,
    anything else a 404.
    """

    def __init__(self):
        self.routes = []
        self.calls = []
        self.closed = False
        self._lock = Lock()

    def route(self, method, pattern, *responses, handler=None, exact=False):
        route = Route(method, pattern, responses, handler, exact)
        self.routes.append(route)
        return route

    def send(self, method, url, headers=None, body=None, timeout=10.0):
        with self._lock:
            self.calls.append((method, url, dict(headers or {})))
            route = next((r for r in self.routes if r.matches(method, url)), None)
            if route is None:
                return HttpResponse(status=200 if method == 'HEAD' else 404)
            route.hits += 1
            if route.handler is None:
                response = route.responses[0] if len(route.responses) == 1 else route.responses.pop(0)
            else:
                response = None

        if route.handler is not None:
            response = route.handler(url, headers or {})
        if isinstance(response, BaseException):
            raise response
        return response

    def calls_to(self, pattern, method=None):
        return [c for c in self.calls if pattern in c[1] and (method is None or c[0] == method)]

    def close(self):
        self.closed = True


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
