"""
Guest Cookie Factory

Warms the credential store with anonymous cookie jars taken from the
upstream home page, so public discovery needs no operator credentials.
"""

import logging
import random
import string
from typing import Dict, Optional

from ..config import UpstreamConfig
from .credential_store import CredentialStore
from .transport import HttpResponse

logger = logging.getLogger(__name__)


def parse_set_cookie(response: HttpResponse) -> Dict[str, str]:
    """Collect name=value pairs from every Set-Cookie line"""
    cookies = {}
    raw = response.header('set-cookie') or ''
    for line in raw.split("\n"):
        pair = line.split(';', 1)[0]
        if '=' not in pair:
            continue
        name, value = pair.split('=', 1)
        if name.strip() and value.strip():
            cookies[name.strip()] = value.strip()
    return cookies


class GuestCookieFactory:
    """Creates anonymous cookie jars"""

    def __init__(self, transport, upstream: Optional[UpstreamConfig] = None, timeout: float = 10.0,
                 rng: Optional[random.Random] = None):
        self.transport = transport
        self.upstream = upstream or UpstreamConfig()
        self.timeout = timeout
        self.rng = rng or random.Random()

    def create(self) -> Dict[str, str]:
        """Fetch the home page and return its cookies. Raises RuntimeError on failure."""
        headers = {
            'User-Agent': self.upstream.user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.5',
            'DNT': '1',
            'Upgrade-Insecure-Requests': '1',
        }
        response = self.transport.send('GET', self.upstream.home_url, headers=headers, timeout=self.timeout)
        if response.status != 200:
            raise RuntimeError(f"Home page returned {response.status}")

        cookies = parse_set_cookie(response)
        if not cookies.get(self.upstream.csrf_cookie):
            raise RuntimeError(f"Missing essential cookie {self.upstream.csrf_cookie}")

        # Device cookie is often withheld on the first guest visit
        if not cookies.get(self.upstream.device_cookie):
            suffix = ''.join(self.rng.choice(string.ascii_lowercase + string.digits) for _ in range(15))
            cookies[self.upstream.device_cookie] = f"ZpL9AQABAAHd7hNTdn{suffix}"
            logger.debug(f"Generated guest {self.upstream.device_cookie} cookie")

        return cookies

    def warm_up(self, store: CredentialStore, count: int) -> int:
        """
        Fill the store with up to count guest jars.

        Individual failures are skipped; an empty pool afterwards is fatal.
        """
        created = 0
        for index in range(1, count + 1):
            try:
                cookies = self.create()
            except Exception as e:
                logger.warning(f"Failed to create guest jar {index}: {e}")
                continue
            store.add_credential_set(cookies, set_id=f"guest_jar_{index}")
            created += 1

        if store.size == 0:
            raise RuntimeError("Failed to create any guest cookie jars. Check network connectivity.")

        logger.info(f"Guest cookie factory ready: {created} jars created, {store.size} in pool")
        return created
