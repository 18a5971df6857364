#!/usr/bin/env python3
"""
Discovery Job Runner

Two-phase job over a list of profile URLs:
- Phase 1: discover every profile's item identifiers (strategy fallback,
  soft-throttle recovery, credential rotation)
- Phase 2: extract each identifier's record, reconcile what went missing,
  append a per-profile summary

Ctrl+C cancels cooperatively: outstanding waits abort within one retry cycle.
"""

import re
import sys
import json
import signal
import logging
import argparse
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Event
from typing import Dict, Iterable, List, Optional, Tuple

from .config import HarvesterConfig, load_config
from .core import (
    CredentialStore,
    DiscoveryOutcome,
    DiscoveryPipeline,
    DiscoveryStatus,
    EntityRef,
    GuestCookieFactory,
    JobCancelled,
    RequestsTransport,
)
from .extraction import ExtractionReport, RecordExtractor, summary_record
from .sink import DiscoveryStateStore, JsonlSink
from .strategies import build_strategies

logger = logging.getLogger(__name__)

PROFILE_URL_RE = re.compile(r'instagram\.com/([^/?#]+)', re.IGNORECASE)
RELATIVE_DATE_RE = re.compile(r'^\s*(\d+)\s*(day|week|month)s?\s*$', re.IGNORECASE)

# Path segments that are not profiles
NON_PROFILE_PATHS = {'p', 'reel', 'reels', 'explore', 'stories', 'accounts', 'tv'}


def setup_logging(log_dir: Path, verbose: bool = False):
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_dir / f'discovery_{datetime.now():%Y%m%d}.log'),
        ]
    )


def parse_usernames(urls: Iterable[str]) -> List[Tuple[str, str]]:
    """(username, input_url) per valid profile URL, first occurrence wins"""
    seen = set()
    entities = []
    for url in urls:
        match = PROFILE_URL_RE.search(url or '')
        if not match:
            logger.warning(f"Skipping input that is not a profile URL: {url!r}")
            continue
        username = match.group(1)
        if username.lower() in NON_PROFILE_PATHS:
            logger.warning(f"Skipping non-profile URL: {url!r}")
            continue
        if username in seen:
            continue
        seen.add(username)
        entities.append((username, url))
    return entities


def parse_cutoff(value: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """ISO date/datetime, or a relative "N days|weeks|months" before now"""
    if not value:
        return None
    match = RELATIVE_DATE_RE.match(value)
    if match:
        amount, unit = int(match.group(1)), match.group(2).lower()
        days = amount * {'day': 1, 'week': 7, 'month': 30}[unit]
        return (now or datetime.now(timezone.utc)) - timedelta(days=days)
    try:
        cutoff = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValueError(f"Invalid date cutoff '{value}': expected an ISO date or 'N days|weeks|months'") from None
    if cutoff.tzinfo is None:
        cutoff = cutoff.replace(tzinfo=timezone.utc)
    return cutoff


def read_input_file(path: Path) -> List[str]:
    """JSON list of URLs, or one URL per line"""
    text = Path(path).read_text(encoding='utf-8')
    if text.lstrip().startswith('['):
        return [str(item) for item in json.loads(text)]
    return [line.strip() for line in text.splitlines() if line.strip() and not line.startswith('#')]


def log_outcome(entity: EntityRef, outcome: DiscoveryOutcome):
    """Outcome callback: one summary line per entity, loud on exhaustion"""
    if outcome.status == DiscoveryStatus.EXHAUSTED:
        logger.critical(
            f"❌ {entity.username}: no items discovered "
            f"({'; '.join(f'{k}: {v}' for k, v in outcome.errors.items()) or 'no errors recorded'})"
        )
    else:
        logger.info(
            f"✅ {entity.username}: {len(outcome.items)} items ({outcome.status.value}, "
            f"claimed {outcome.claimed_total if outcome.claimed_total is not None else 'unknown'})"
        )


class DiscoveryJob:
    """Wires the core together and runs both phases"""

    def __init__(
        self,
        config: Optional[HarvesterConfig] = None,
        transport=None,
        cancel_event: Optional[Event] = None,
        store: Optional[CredentialStore] = None,
    ):
        self.config = config or HarvesterConfig()
        only_newer_than = parse_cutoff(self.config.job.only_newer_than)
        self.cancel_event = cancel_event or Event()
        self.transport = transport or RequestsTransport(pool_size=self.config.job.max_workers)
        self.store = store or CredentialStore(
            self.config.credentials,
            auth_cookies=self.config.upstream.auth_cookies,
        )

        data_dir = Path(self.config.job.data_dir)
        self.sink = JsonlSink(data_dir / 'records.jsonl')
        self.state = DiscoveryStateStore(data_dir / 'discovery_state.json')
        self.pipeline = DiscoveryPipeline(
            self.store,
            self.transport,
            self.config,
            cancel_event=self.cancel_event,
            on_outcome=log_outcome,
        )
        self.extractor = RecordExtractor(
            self.pipeline,
            self.sink,
            self.state,
            max_workers=self.config.job.max_workers,
            only_newer_than=only_newer_than,
        )

    def warm_up(self):
        """Load operator cookies, then top the pool up with guest jars"""
        cookie_file = self.config.credentials.cookie_file
        if cookie_file:
            self.store.load_cookie_file(cookie_file)

        pool_size = self.config.credentials.guest_pool_size
        if pool_size > 0:
            GuestCookieFactory(self.transport, self.config.upstream).warm_up(self.store, pool_size)
        elif self.store.size == 0:
            raise RuntimeError("No cookie sets available: provide a cookie file or enable guest jars")

        save_path = self.config.credentials.pool_save_file
        if save_path:
            self.store.save_cookie_file(save_path)

    def run_phase1(self, entities: List[EntityRef], max_items: Optional[int] = None) -> Dict[str, DiscoveryOutcome]:
        """Discover every entity that needs it, concurrently"""
        pending = [e for e in entities if self.state.needs_discovery(e.username)]
        for entity in entities:
            if entity not in pending:
                logger.info(f"[{entity.username}] Discovery already complete, skipping Phase 1")

        outcomes: Dict[str, DiscoveryOutcome] = {}
        if not pending:
            return outcomes

        logger.info(f"Phase 1: discovering {len(pending)} profile(s)")
        names = self.config.job.strategies
        known = self.config.job.known_identifiers

        executor = ThreadPoolExecutor(max_workers=min(self.config.job.max_workers, len(pending)))
        futures = {
            executor.submit(self.pipeline.discover, entity, max_items, build_strategies(names, known)): entity
            for entity in pending
        }
        try:
            for future in as_completed(futures):
                entity = futures[future]
                try:
                    outcome = future.result()
                except JobCancelled:
                    raise
                except Exception as e:
                    # One entity's failure never aborts the others
                    logger.error(f"[{entity.username}] Discovery crashed: {e}")
                    continue
                outcomes[entity.username] = outcome
                self.state.save_discovery(
                    entity.username,
                    outcome.items,
                    outcome.status.value,
                    expected_count=outcome.claimed_total,
                    user_id=entity.user_id,
                )
        except JobCancelled:
            for future in futures:
                future.cancel()
            raise
        finally:
            executor.shutdown(wait=True)

        return outcomes

    def run_phase2(self, entity: EntityRef, reconcile: bool = True) -> Tuple[List[str], ExtractionReport]:
        """Extract one entity's discovered records, then reconcile"""
        discovered = self.state.discovered(entity.username)
        if not discovered:
            logger.warning(f"[{entity.username}] No discovered identifiers, nothing to extract")
            return discovered, ExtractionReport(entity.username)

        previous = set(self.state.extracted(entity.username))
        todo = [identifier for identifier in discovered if identifier not in previous]
        report = self.extractor.extract_all(entity, todo)
        report.previous = [identifier for identifier in discovered if identifier in previous]

        if reconcile:
            report = self.extractor.reconcile(entity, discovered, report)
        return discovered, report

    def run(self, urls: Iterable[str], max_items: Optional[int] = None, extract: bool = True) -> Dict:
        parsed = parse_usernames(urls)
        if not parsed:
            raise ValueError("No valid profile URLs in input")

        entities = []
        for username, url in parsed:
            stored = self.state.get(username)
            entities.append(EntityRef(
                username=username,
                user_id=stored.get('user_id'),
                claimed_total=stored.get('expected_count'),
                input_url=url,
            ))

        self.warm_up()
        outcomes = self.run_phase1(entities, max_items)

        summaries = {}
        for entity in entities:
            outcome = outcomes.get(entity.username)
            status = outcome.status.value if outcome else self.state.get(entity.username).get('status')
            if not extract:
                summaries[entity.username] = {'status': status, 'discovered': len(self.state.discovered(entity.username))}
                continue

            if self.cancel_event.is_set():
                raise JobCancelled("Cancelled before extraction")
            discovered, report = self.run_phase2(entity, reconcile=self.config.job.reconcile)
            summary = summary_record(entity, discovered, report, status=status)
            self.sink.append(summary)
            summaries[entity.username] = summary

        logger.info(f"Job complete: {len(entities)} profile(s), {self.sink.count} records written to {self.sink.path}")
        logger.info(f"Cookie pool: {self.store.get_stats()}")
        return summaries

    def close(self):
        close = getattr(self.transport, 'close', None)
        if close:
            close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Profile discovery and extraction job')
    parser.add_argument('urls', nargs='*', help='Profile URLs')
    parser.add_argument('--input', type=Path, help='File with profile URLs (JSON list or one per line)')
    parser.add_argument('--config', type=Path, help='JSON config file')
    parser.add_argument('--max-posts', type=int, help='Target item count per profile (default: claimed total)')
    parser.add_argument('--strategies', type=str, help='Comma-separated strategy order, e.g. primary,alternate,scrape')
    parser.add_argument('--only-newer-than', type=str, help='ISO date or "N days" cutoff for extracted records')
    parser.add_argument('--workers', type=int, help='Worker limit')
    parser.add_argument('--cookie-file', type=Path, help='JSON file with authenticated cookie sets')
    parser.add_argument('--discover-only', action='store_true', help='Skip Phase 2')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose logging')

    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.strategies:
        config.job.strategies = [s.strip() for s in args.strategies.split(',') if s.strip()]
    if args.only_newer_than:
        config.job.only_newer_than = args.only_newer_than
    if args.workers:
        config.job.max_workers = args.workers
    if args.cookie_file:
        config.credentials.cookie_file = args.cookie_file

    setup_logging(config.job.log_dir, args.verbose)

    urls = list(args.urls)
    if args.input:
        urls.extend(read_input_file(args.input))
    if not urls:
        parser.error('no profile URLs given')

    cancel_event = Event()

    def handle_sigint(signum, frame):
        logger.warning("Interrupt received, cancelling outstanding work...")
        cancel_event.set()

    signal.signal(signal.SIGINT, handle_sigint)

    job = None
    try:
        job = DiscoveryJob(config, cancel_event=cancel_event)
        summaries = job.run(urls, max_items=args.max_posts, extract=not args.discover_only)
    except JobCancelled as e:
        logger.warning(f"Job cancelled: {e}")
        return 130
    except (ValueError, RuntimeError) as e:
        logger.error(f"Job failed: {e}")
        return 1
    finally:
        if job is not None:
            job.close()

    print(json.dumps(summaries, indent=2, default=str))
    return 0


if __name__ == '__main__':
    sys.exit(main())
