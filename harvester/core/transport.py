"""
HTTP and Document Capabilities

The discovery core only needs two things from the outside world:
- send(method, url, headers, body, timeout) -> HttpResponse, non-throwing on
  4xx/5xx and raising only on transport failure (timeout, reset, DNS)
- parse(html) -> queryable document

RequestsTransport and parse_document are the default implementations.
"""

import json
import logging
from http.cookiejar import DefaultCookiePolicy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    """Status, lower-cased headers and raw body of one exchange"""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    @property
    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def json(self) -> Any:
        """Decode body as JSON (raises ValueError on garbage)"""
        return json.loads(self.text)

    def header(self, *names: str) -> Optional[str]:
        """First non-empty header among names"""
        for name in names:
            value = self.headers.get(name.lower())
            if value:
                return value
        return None


class RequestsTransport:
    """
    Pooled requests.Session behind the send() capability.

    Retries are disabled at the adapter level; the retry orchestrator owns
    every retry decision.
    """

    def __init__(self, pool_size: int = 12, proxies: Optional[Dict[str, str]] = None):
        self.session = requests.Session()
        adapter = HTTPAdapter(
            pool_connections=pool_size,
            pool_maxsize=pool_size,
            max_retries=0,
        )
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        # Cookies travel in the explicit Cookie header, never in the shared jar
        self.session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
        if proxies:
            self.session.proxies.update(proxies)

    def send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
        timeout: float = 10.0,
    ) -> HttpResponse:
        response = self.session.request(
            method,
            url,
            headers=headers,
            data=body,
            timeout=timeout,
            allow_redirects=True,
        )
        logger.debug(f"{method} {url} -> {response.status_code}")
        return HttpResponse(
            status=response.status_code,
            headers=_collect_headers(response),
            body=response.content,
        )

    def close(self):
        self.session.close()


def _collect_headers(response: requests.Response) -> Dict[str, str]:
    headers = dict(response.headers)
    # Keep every Set-Cookie line, requests folds them into one string
    raw = getattr(response.raw, 'headers', None)
    if raw is not None and hasattr(raw, 'getlist'):
        set_cookies = raw.getlist('Set-Cookie')
        if set_cookies:
            headers['Set-Cookie'] = "\n".join(set_cookies)
    return headers


def parse_document(html: str) -> BeautifulSoup:
    """Parse HTML into a queryable document"""
    return BeautifulSoup(html, 'html.parser')
