"""
Short-TTL Token Lifecycle

The upstream hands each session three rotating values (claim token,
app-build id, anti-forgery token). They are looked up in response headers
first, then in document meta-fields, then replaced by configured defaults.
Nothing in here raises: a missing or stale token is a degraded state, not
a failure.
"""

import logging
import re
import time
from typing import Callable, Dict, Mapping, Optional, Tuple, Union

from ..config import TokenConfig, UpstreamConfig
from .credential_store import CredentialStore, Session, TokenSet
from .transport import parse_document

logger = logging.getLogger(__name__)

CSRF_IN_DOCUMENT_RE = re.compile(r'"csrf_token":"([^"]+)"')


def _lower_keys(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {k.lower(): v for k, v in (headers or {}).items()}


class TokenLifecycle:
    """Extracts, attaches and refreshes per-session tokens"""

    def __init__(
        self,
        store: CredentialStore,
        transport=None,
        upstream: Optional[UpstreamConfig] = None,
        config: Optional[TokenConfig] = None,
        parser: Callable = parse_document,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.transport = transport
        self.upstream = upstream or UpstreamConfig()
        self.config = config or TokenConfig()
        self.parser = parser
        self.clock = clock

    def _lookup(
        self,
        response_headers: Optional[Mapping[str, str]],
        response_body: Union[str, bytes, None],
    ) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        """Raw (claim, app_build, anti_forgery), None where not found"""
        up = self.upstream
        headers = _lower_keys(response_headers)

        claim = next((headers[h] for h in up.claim_response_headers if headers.get(h)), None)
        app_build = next((headers[h] for h in up.app_build_response_headers if headers.get(h)), None)
        anti_forgery = next((headers[h] for h in up.anti_forgery_response_headers if headers.get(h)), None)

        if response_body and (claim is None or anti_forgery is None):
            try:
                if isinstance(response_body, bytes):
                    response_body = response_body.decode('utf-8', errors='replace')
                document = self.parser(response_body)
                if claim is None:
                    meta = document.find('meta', attrs={'name': up.claim_meta_name})
                    if meta and meta.get('content'):
                        claim = meta['content']
                if anti_forgery is None:
                    field = document.find('input', attrs={'name': up.anti_forgery_input_name})
                    if field and field.get('value'):
                        anti_forgery = field['value']
            except Exception as e:
                logger.debug(f"Token meta-field lookup failed: {e}")

        return claim, app_build, anti_forgery

    def extract(
        self,
        response_headers: Optional[Mapping[str, str]],
        response_body: Union[str, bytes, None],
        session: Session,
    ) -> TokenSet:
        """Pull tokens from headers, then meta-fields, then defaults; attach to session"""
        up = self.upstream
        claim, app_build, anti_forgery = self._lookup(response_headers, response_body)

        tokens = TokenSet(
            claim=claim or up.claim_fallback,
            app_build=app_build or up.app_build_fallback,
            anti_forgery=anti_forgery or up.anti_forgery_fallback,
            extracted_at=self.clock(),
        )
        self.store.attach_tokens(session, tokens)
        logger.info(
            f"Extracted tokens for {session.id}: claim={tokens.claim!r}, "
            f"app_build={tokens.app_build!r}, anti_forgery={'present' if anti_forgery else 'default'}"
        )
        return tokens

    def is_due(self, session: Session, call_counter: int) -> bool:
        tokens = session.tokens
        if tokens is None:
            return True
        every = self.config.refresh_every
        if every > 0 and call_counter > 0 and call_counter % every == 0:
            return True
        return self.clock() - tokens.extracted_at >= self.config.ttl_seconds

    def refresh_if_due(self, session: Session, call_counter: Optional[int] = None) -> bool:
        """
        Re-derive the claim token every N calls or after the TTL.
        Returns True if a refresh request was made and succeeded.
        """
        if call_counter is None:
            call_counter = self.store.count_token_call(session)
        if session.retired or not self.is_due(session, call_counter):
            return False

        logger.info(f"Refreshing claim token for {session.id} after {call_counter} calls")
        try:
            response = self._send('HEAD', self.upstream.home_url, session)
        except Exception as e:
            logger.debug(f"Claim refresh failed for {session.id}: {e}")
            return False

        if response.status >= 400:
            logger.debug(f"Claim refresh for {session.id} returned {response.status}, keeping stale token")
            return False

        previous = session.tokens
        if previous is None:
            self.extract(response.headers, None, session)
            return True

        # A HEAD usually carries only the claim; keep whatever did not come back
        claim, app_build, anti_forgery = self._lookup(response.headers, None)
        tokens = TokenSet(
            claim=claim or previous.claim,
            app_build=app_build or previous.app_build,
            anti_forgery=anti_forgery or previous.anti_forgery,
            extracted_at=self.clock(),
        )
        self.store.attach_tokens(session, tokens)
        logger.info(f"Claim token for {session.id} refreshed: {tokens.claim!r}")
        return True

    def refresh(self, session: Session) -> bool:
        """
        Proactive refresh after repeated auth failures: re-derive the CSRF
        cookie from the home page document and re-extract all tokens.
        """
        credential_set = session.credential_set
        logger.info(f"Proactively refreshing CSRF cookie and tokens for {session.id}")
        try:
            response = self._send('GET', self.upstream.home_url, session)
        except Exception as e:
            logger.warning(f"CSRF refresh failed for {session.id}: {e}")
            return False

        if response.status != 200:
            logger.warning(f"CSRF refresh for {session.id} returned {response.status}")
            return False

        match = CSRF_IN_DOCUMENT_RE.search(response.text)
        if match and credential_set is not None:
            self.store.update_cookie(credential_set.id, self.upstream.csrf_cookie, match.group(1))
        self.extract(response.headers, response.text, session)
        if not match:
            logger.warning(f"CSRF refresh for {session.id}: no new token in document")
        return bool(match)

    def build_headers(
        self,
        session: Session,
        referer: Optional[str] = None,
        mobile: bool = False,
        extra: Optional[Dict[str, str]] = None,
    ) -> Dict[str, str]:
        """The required header set for an API call on this session"""
        up = self.upstream
        tokens = session.tokens
        headers = {
            'User-Agent': up.mobile_user_agent if mobile else session.user_agent,
            'Accept': '*/*',
            'Accept-Language': 'en-US,en;q=0.9',
            'X-Requested-With': 'XMLHttpRequest',
            up.app_id_header: up.app_id,
            up.claim_header: tokens.claim if tokens else up.claim_fallback,
            up.app_build_header: tokens.app_build if tokens else up.app_build_fallback,
            up.anti_forgery_header: (tokens.anti_forgery if tokens else None) or up.anti_forgery_fallback,
            'Cache-Control': 'no-cache',
            'Pragma': 'no-cache',
        }
        credential_set = session.credential_set
        if credential_set is not None:
            headers['Cookie'] = credential_set.cookie_header
            csrf = credential_set.cookie(up.csrf_cookie)
            if csrf:
                headers[up.csrf_header] = csrf
        if referer:
            headers['Referer'] = referer
        if extra:
            headers.update(extra)
        return headers

    def _send(self, method: str, url: str, session: Session):
        if self.transport is None:
            raise RuntimeError("No transport configured for token refresh")
        headers = {
            'User-Agent': session.user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
        }
        if session.credential_set is not None:
            headers['Cookie'] = session.credential_set.cookie_header
        return self.transport.send(method, url, headers=headers, timeout=self.config.refresh_timeout)
