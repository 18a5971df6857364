"""
Credential Store with Cooldown-Based Rotation

Features:
- Pool of cookie sets, leased to at most one in-flight operation at a time
- Least-recently-used selection, authenticated sets preferred
- Blocked sets cool down and return to the pool on the next sweep
- Sessions bind a leased cookie set to a browser identity and token set
- Cookie persistence to JSON

All mutation of CredentialSet and Session objects goes through this store,
under one lock.
"""

import json
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import RLock
from typing import Callable, Dict, Iterable, List, Optional

from ..config import CredentialConfig
from .errors import PoolExhaustedError

logger = logging.getLogger(__name__)


# Real browser user agents, one is pinned per session
USER_AGENTS = {
    'chrome_mac': [
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    ],
    'chrome_windows': [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    ],
    'edge': [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
    ],
}


class CredentialStatus(Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"


@dataclass
class CredentialSet:
    """A named cookie bundle that rotates as one unit"""
    id: str
    cookies: Dict[str, str]
    authenticated: bool = False
    status: CredentialStatus = CredentialStatus.ACTIVE
    blocked_at: Optional[float] = None
    use_count: int = 0
    last_used: float = 0.0
    leased: bool = False

    def cookie(self, name: str) -> Optional[str]:
        value = self.cookies.get(name)
        if value in (None, "", "missing"):
            return None
        return value

    @property
    def cookie_header(self) -> str:
        return "; ".join(f"{k}={v}" for k, v in sorted(self.cookies.items()))


@dataclass
class TokenSet:
    """Short-TTL header values bound to one session"""
    claim: str
    app_build: str
    anti_forgery: Optional[str]
    extracted_at: float
    calls_since_refresh: int = 0


@dataclass
class Session:
    """
    A logical request identity: one user agent, one leased cookie set,
    one token set. Read-only outside the store.
    """
    id: str
    user_agent: str
    credential_set: Optional[CredentialSet] = None
    tokens: Optional[TokenSet] = None
    usage_count: int = 0
    retired: bool = False
    last_block_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)


class CredentialStore:
    """
    Owns cookie sets and sessions.

    acquire() never hands the same set to two holders; a set goes back to
    the pool through release() or retire_session().
    """

    def __init__(
        self,
        config: Optional[CredentialConfig] = None,
        auth_cookies: Iterable[str] = ("sessionid", "ds_user_id", "csrftoken"),
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or CredentialConfig()
        self.auth_cookies = tuple(auth_cookies)
        self.clock = clock
        self.rng = rng or random.Random()

        self.credential_sets: Dict[str, CredentialSet] = {}
        self.sessions: Dict[str, Session] = {}
        self._lock = RLock()
        self._set_counter = 0
        self._session_counter = 0

    # -- pool management -------------------------------------------------

    def add_credential_set(self, cookies: Dict[str, str], set_id: Optional[str] = None) -> CredentialSet:
        """Add a cookie bundle to the pool"""
        with self._lock:
            self._set_counter += 1
            set_id = set_id or f"jar_{self._set_counter}"
            authenticated = all(cookies.get(name) for name in self.auth_cookies)
            credential_set = CredentialSet(
                id=set_id,
                cookies=dict(cookies),
                authenticated=authenticated,
            )
            self.credential_sets[set_id] = credential_set
            logger.debug(f"Added cookie set {set_id} ({len(cookies)} cookies, authenticated={authenticated})")
            return credential_set

    def sweep(self) -> int:
        """Return cooled-down sets to active. Returns how many were restored."""
        with self._lock:
            now = self.clock()
            restored = 0
            for credential_set in self.credential_sets.values():
                if credential_set.status != CredentialStatus.BLOCKED:
                    continue
                if now - credential_set.blocked_at >= self.config.cooldown_seconds:
                    credential_set.status = CredentialStatus.ACTIVE
                    credential_set.blocked_at = None
                    restored += 1
            if restored:
                logger.info(f"Cooldown elapsed for {restored} cookie set(s), back in rotation")
            return restored

    def acquire(self, exclude: Optional[str] = None) -> Optional[CredentialSet]:
        """
        Lease the least-recently-used active set.

        A set named by exclude is only handed out when no other set is free.

        Returns None when every set is blocked, leased or worn out; callers
        treat that as a retryable condition.
        """
        with self._lock:
            self.sweep()
            candidates = [
                cs for cs in self.credential_sets.values()
                if cs.status == CredentialStatus.ACTIVE
                and not cs.leased
                and cs.use_count < self.config.max_uses_per_set
            ]
            if not candidates:
                logger.warning(
                    f"Cookie pool exhausted: {self.blocked_count} blocked, "
                    f"{len(self.credential_sets)} total"
                )
                return None

            if exclude is not None and len(candidates) > 1:
                candidates = [cs for cs in candidates if cs.id != exclude]
            chosen = min(candidates, key=lambda cs: (not cs.authenticated, cs.last_used, cs.use_count))
            chosen.leased = True
            chosen.use_count += 1
            chosen.last_used = self.clock()
            return chosen

    def release(self, set_id: str):
        """Hand a leased set back to the pool"""
        with self._lock:
            credential_set = self.credential_sets.get(set_id)
            if credential_set:
                credential_set.leased = False

    def mark_blocked(self, set_id: str):
        """Move a set to blocked and start its cooldown. Idempotent."""
        with self._lock:
            credential_set = self.credential_sets.get(set_id)
            if credential_set is None or credential_set.status == CredentialStatus.BLOCKED:
                return
            credential_set.status = CredentialStatus.BLOCKED
            credential_set.blocked_at = self.clock()
            logger.info(f"Cookie set {set_id} marked as blocked (cooldown {self.config.cooldown_seconds:.0f}s)")

    def status(self, set_id: str) -> CredentialStatus:
        """Current status of a set, after applying any elapsed cooldown"""
        with self._lock:
            self.sweep()
            return self.credential_sets[set_id].status

    def update_cookie(self, set_id: str, name: str, value: str):
        with self._lock:
            credential_set = self.credential_sets.get(set_id)
            if credential_set:
                credential_set.cookies[name] = value

    # -- sessions --------------------------------------------------------

    def open_session(self, exclude: Optional[str] = None) -> Session:
        """Create a session on a freshly leased cookie set, avoiding exclude if possible"""
        with self._lock:
            credential_set = self.acquire(exclude)
            if credential_set is None:
                raise PoolExhaustedError("No cookie set available for a new session")

            self._session_counter += 1
            browser = self.rng.choice(sorted(USER_AGENTS))
            session = Session(
                id=f"session_{self._session_counter}",
                user_agent=self.rng.choice(USER_AGENTS[browser]),
                credential_set=credential_set,
                created_at=self.clock(),
            )
            self.sessions[session.id] = session
            logger.debug(f"Opened {session.id} on cookie set {credential_set.id}")
            return session

    def retire_session(self, session: Session):
        """Retire a session and drop its tokens; the cookie set survives"""
        with self._lock:
            if session.retired:
                return
            session.retired = True
            session.tokens = None
            if session.credential_set is not None:
                session.credential_set.leased = False
            self.sessions.pop(session.id, None)
            logger.info(f"Retired {session.id} after {session.usage_count} requests")

    def record_use(self, session: Session):
        """Count a successful request; retire at the usage ceiling"""
        with self._lock:
            session.usage_count += 1
            if session.usage_count >= self.config.session_max_usage:
                logger.debug(f"{session.id} reached usage ceiling ({session.usage_count})")
                self.retire_session(session)

    def record_block(self, session: Session):
        with self._lock:
            session.last_block_at = self.clock()

    def attach_tokens(self, session: Session, tokens: TokenSet):
        with self._lock:
            if not session.retired:
                session.tokens = tokens

    def count_token_call(self, session: Session) -> int:
        """Bump the call counter on a session's tokens, returns the new value"""
        with self._lock:
            if session.tokens is None:
                return 0
            session.tokens.calls_since_refresh += 1
            return session.tokens.calls_since_refresh

    # -- persistence -----------------------------------------------------

    def load_cookie_file(self, path: Path) -> int:
        """
        Load operator-provided cookie sets (JSON list of cookie maps).
        Entries missing any authenticated key are skipped.
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"No cookie file at {path}")
            return 0

        with open(path, 'r', encoding='utf-8') as f:
            entries = json.load(f)

        loaded = 0
        for index, cookies in enumerate(entries, 1):
            missing = [name for name in self.auth_cookies if not cookies.get(name)]
            if missing:
                logger.warning(f"Skipping cookie set {index}: missing {', '.join(missing)}")
                continue
            self.add_credential_set(cookies, set_id=f"real_cookie_set_{index}")
            loaded += 1

        logger.info(f"Loaded {loaded} authenticated cookie set(s) from {path}")
        return loaded

    def save_cookie_file(self, path: Path):
        """Save all cookie maps to disk (JSON)"""
        with self._lock:
            payload = [dict(cs.cookies) for cs in self.credential_sets.values()]
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2)
        logger.debug(f"Saved {len(payload)} cookie set(s) to {path}")

    # -- stats -----------------------------------------------------------

    @property
    def size(self) -> int:
        return len(self.credential_sets)

    @property
    def blocked_count(self) -> int:
        return sum(1 for cs in self.credential_sets.values() if cs.status == CredentialStatus.BLOCKED)

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                'credential_sets': self.size,
                'blocked': self.blocked_count,
                'leased': sum(1 for cs in self.credential_sets.values() if cs.leased),
                'open_sessions': len(self.sessions),
            }

    def list_sets(self) -> List[CredentialSet]:
        with self._lock:
            return list(self.credential_sets.values())
