"""
Harvester Configuration

Central configuration for discovery, extraction and resilience parameters.
Every upstream-specific literal (URLs, document ids, header names) lives in
UpstreamConfig so a contract change upstream is a config change here.
"""

import json
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class UpstreamConfig:
    """Endpoints, document ids and the required header set"""
    base_url: str = "https://www.instagram.com"
    home_url: str = "https://www.instagram.com/"
    profile_page_url: str = "https://www.instagram.com/{username}/"
    profile_info_url: str = "https://i.instagram.com/api/v1/users/web_profile_info/?username={username}"
    graphql_url: str = "https://www.instagram.com/graphql/query/"
    mobile_feed_url: str = "https://i.instagram.com/api/v1/feed/user/{user_id}/"
    post_url: str = "https://www.instagram.com/p/{shortcode}/"

    # GraphQL document ids rotate every few months
    timeline_doc_id: str = "7950326061742207"
    record_doc_id: str = "8845758582119845"

    app_id: str = "936619743392459"
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    mobile_user_agent: str = "Instagram 300.0.0.0 iOS"

    # Request header names
    app_id_header: str = "X-IG-App-ID"
    claim_header: str = "X-IG-WWW-Claim"
    app_build_header: str = "X-ASBD-ID"
    anti_forgery_header: str = "X-FB-LSD"
    csrf_header: str = "X-CSRFToken"

    # Response header names the tokens are handed out in (checked in order)
    claim_response_headers: Tuple[str, ...] = ("ig-set-www-claim", "x-ig-set-www-claim")
    app_build_response_headers: Tuple[str, ...] = ("ig-set-asbd-id", "x-ig-set-asbd-id")
    anti_forgery_response_headers: Tuple[str, ...] = ("ig-set-lsd",)

    # Document meta-fields used when the headers are absent
    claim_meta_name: str = "ig-www-claim"
    anti_forgery_input_name: str = "lsd"

    # Values used when a token cannot be found anywhere
    claim_fallback: str = "0"
    app_build_fallback: str = "129477"
    anti_forgery_fallback: str = "AVqbxe3J_YA"

    csrf_cookie: str = "csrftoken"
    device_cookie: str = "mid"
    auth_cookies: Tuple[str, ...] = ("sessionid", "ds_user_id", "csrftoken")


@dataclass
class CredentialConfig:
    """Cookie pool and session lifecycle"""
    cooldown_seconds: float = 180.0      # Blocked cookie set sits out this long
    max_uses_per_set: int = 1000         # Lifetime ceiling per cookie set
    session_max_usage: int = 30          # Retire a session after N successful requests
    guest_pool_size: int = 30
    cookie_file: Optional[Path] = None
    pool_save_file: Optional[Path] = None  # Write the warmed pool back here


@dataclass
class TokenConfig:
    """Short-TTL token refresh policy"""
    refresh_every: int = 25              # Re-derive claim token every N calls (0 disables)
    ttl_seconds: float = 12 * 60
    refresh_timeout: float = 5.0


@dataclass
class ThrottleConfig:
    """Per-session request pacing"""
    base_delay_range: Tuple[float, float] = (1.0, 3.0)
    block_penalty: float = 2.0
    spacing_penalty: float = 1.0
    min_spacing: float = 0.5             # Requests closer than this get the spacing penalty
    penalty_decay: float = 60.0          # A block older than this no longer counts
    max_delay: float = 8.0


@dataclass
class RetryConfig:
    """Retry settings"""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 15.0
    jitter_range: Tuple[float, float] = (0.5, 1.5)
    pool_exhausted_delay: float = 5.0
    auth_failure_window: float = 300.0   # 5 minutes
    auth_failure_threshold: int = 2
    malformed_retries: int = 1
    request_timeout: float = 7.0
    timeout_multiplier: float = 1.5


@dataclass
class PipelineConfig:
    """Discovery pipeline settings"""
    throttle_retry_cap: int = 3
    page_size: int = 50
    alternate_max_batches: int = 10
    page_pause_range: Tuple[float, float] = (0.2, 0.5)
    identifier_pattern: str = r"[A-Za-z0-9_-]{11}"


@dataclass
class JobConfig:
    """Job driver settings"""
    max_workers: int = 12
    data_dir: Path = Path("./data")
    log_dir: Path = Path("./logs")
    strategies: List[str] = field(default_factory=lambda: [
        "primary", "alternate", "scrape", "static",
    ])
    known_identifiers: Dict[str, List[str]] = field(default_factory=dict)
    default_target: int = 1000           # Used when neither max_posts nor a claim is known
    only_newer_than: Optional[str] = None
    reconcile: bool = True


@dataclass
class HarvesterConfig:
    """Main configuration"""
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    credentials: CredentialConfig = field(default_factory=CredentialConfig)
    tokens: TokenConfig = field(default_factory=TokenConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    job: JobConfig = field(default_factory=JobConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HarvesterConfig":
        config = cls()
        _apply_overrides(config, data, "config")
        return config


def _apply_overrides(target: Any, data: Dict[str, Any], path: str):
    """Overwrite dataclass fields from a nested dict, rejecting unknown keys"""
    known = {f.name: f for f in fields(target)}
    for key, value in data.items():
        if key not in known:
            raise ValueError(f"Unknown config key: {path}.{key}")

        current = getattr(target, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ValueError(f"Expected a mapping for {path}.{key}")
            _apply_overrides(current, value, f"{path}.{key}")
        elif isinstance(current, tuple) and isinstance(value, list):
            setattr(target, key, tuple(value))
        elif isinstance(current, Path) or key.endswith(("_dir", "_file")):
            setattr(target, key, Path(value) if value is not None else None)
        else:
            setattr(target, key, value)


def load_config(path: Optional[Path] = None) -> HarvesterConfig:
    """Load configuration from a JSON file, or defaults if no path is given"""
    if path is None:
        return HarvesterConfig()

    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    return HarvesterConfig.from_dict(data)

