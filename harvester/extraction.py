"""
Phase 2: Record Extraction

Fetches each discovered identifier's full record through the retry
orchestrator, maps it and appends it to the sink.

Features:
- Concurrent per-item extraction bounded by the worker limit
- Per-item failures recorded, never fatal to the entity
- Optional "only newer than" date filter
- Reconciliation pass for identifiers discovered but not extracted
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

from .core.context import EntityRef
from .core.errors import DiscoveryError, JobCancelled, MalformedResponseError
from .core.pipeline import DiscoveryPipeline
from .core.retry_handler import AttemptContext
from .records import is_newer_than, map_post_record
from .sink import DiscoveryStateStore, JsonlSink
from .strategies.base import check_graphql, decode_json, raise_for_status
from .strategies.extractors import RECORD_EXTRACTORS, first_match

logger = logging.getLogger(__name__)

EXTRACTED = "extracted"
FILTERED = "filtered"
FAILED = "failed"


@dataclass
class ExtractionReport:
    """What happened to each identifier of one entity"""
    username: str
    extracted: List[str] = field(default_factory=list)
    filtered: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    # Handled by an earlier run of the same job
    previous: List[str] = field(default_factory=list)

    @property
    def processed(self) -> List[str]:
        return self.previous + self.extracted + self.filtered

    def merge(self, other: "ExtractionReport"):
        self.extracted.extend(other.extracted)
        self.filtered.extend(other.filtered)
        for identifier in other.processed:
            self.failures.pop(identifier, None)
        self.failures.update(other.failures)


class RecordExtractor:
    """Runs Phase 2 for one entity at a time"""

    def __init__(
        self,
        pipeline: DiscoveryPipeline,
        sink: JsonlSink,
        state: Optional[DiscoveryStateStore] = None,
        max_workers: Optional[int] = None,
        only_newer_than: Optional[datetime] = None,
        mapper: Callable = map_post_record,
    ):
        self.pipeline = pipeline
        self.sink = sink
        self.state = state
        self.max_workers = max_workers or pipeline.config.job.max_workers
        self.only_newer_than = only_newer_than
        self.mapper = mapper

    def fetch_record(self, attempt: AttemptContext, context, identifier: str) -> Dict:
        """Single-record document query"""
        up = context.config.upstream
        headers = context.tokens.build_headers(
            attempt.session,
            referer=up.post_url.format(shortcode=identifier),
            extra={'Sec-Fetch-Site': 'same-origin', 'Sec-Fetch-Mode': 'cors', 'Sec-Fetch-Dest': 'empty'},
        )
        # Single-record queries go out without the claim token
        headers.pop(up.claim_header, None)

        params = {
            'doc_id': up.record_doc_id,
            'variables': json.dumps({'shortcode': identifier}),
        }
        response = context.transport.send(
            'GET',
            f"{up.graphql_url}?{urlencode(params)}",
            headers=headers,
            timeout=attempt.timeout,
        )
        raise_for_status(response, f"record {identifier}")

        payload = decode_json(response, f"record {identifier}")
        check_graphql(payload, f"record {identifier}")
        node = first_match(payload, RECORD_EXTRACTORS)
        if node is None:
            raise MalformedResponseError(f"No record data for {identifier}")
        return node

    def extract_one(self, entity: EntityRef, identifier: str) -> Tuple[str, Optional[str]]:
        """Returns (outcome, failure reason)"""
        context = self.pipeline.new_context(entity)
        try:
            node = self.pipeline.retry.execute(
                lambda attempt: self.fetch_record(attempt, context, identifier),
                context,
                label="extract",
            )
        except JobCancelled:
            raise
        except DiscoveryError as e:
            return FAILED, f"{e.kind.value}: {e}"
        finally:
            context.release()

        try:
            record = self.mapper(node, entity.username, entity.input_url)
        except Exception as e:
            logger.error(f"[{entity.username}] Mapping {identifier} failed: {e}")
            return FAILED, f"mapping: {e}"
        if record is None:
            return FAILED, "record has no short code"

        if not is_newer_than(record, self.only_newer_than):
            logger.debug(f"[{entity.username}] {identifier} is older than the cutoff, skipped")
            return FILTERED, None

        self.sink.append(record)
        return EXTRACTED, None

    def extract_all(self, entity: EntityRef, identifiers: Sequence[str]) -> ExtractionReport:
        report = ExtractionReport(entity.username)
        if not identifiers:
            return report

        logger.info(f"[{entity.username}] Extracting {len(identifiers)} records with {self.max_workers} workers")
        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        futures = {executor.submit(self.extract_one, entity, identifier): identifier for identifier in identifiers}
        try:
            for future in as_completed(futures):
                identifier = futures[future]
                try:
                    outcome, reason = future.result()
                except JobCancelled:
                    raise
                except Exception as e:
                    outcome, reason = FAILED, f"{type(e).__name__}: {e}"
                    logger.error(f"[{entity.username}] Extraction of {identifier} crashed: {e}")

                if outcome == EXTRACTED:
                    report.extracted.append(identifier)
                elif outcome == FILTERED:
                    report.filtered.append(identifier)
                else:
                    report.failures[identifier] = reason
                    logger.warning(f"[{entity.username}] Failed to extract {identifier}: {reason}")
        except JobCancelled:
            for future in futures:
                future.cancel()
            raise
        finally:
            executor.shutdown(wait=True)

        if self.state is not None:
            self.state.mark_extracted(entity.username, report.processed)

        logger.info(
            f"[{entity.username}] Extraction: {len(report.extracted)} extracted, "
            f"{len(report.filtered)} filtered, {len(report.failures)} failed"
        )
        return report

    def reconcile(self, entity: EntityRef, discovered: Sequence[str], report: ExtractionReport) -> ExtractionReport:
        """Re-attempt identifiers that were discovered but not extracted"""
        done = set(report.processed)
        if self.state is not None:
            done.update(self.state.extracted(entity.username))
        missing = [identifier for identifier in discovered if identifier not in done]
        if not missing:
            logger.info(f"[{entity.username}] No missing records, skipping reconciliation")
            return report

        logger.info(f"[{entity.username}] Re-attempting {len(missing)} missing records (final pass)")
        report.merge(self.extract_all(entity, missing))
        return report


def summary_record(
    entity: EntityRef,
    discovered: Sequence[str],
    report: ExtractionReport,
    status: Optional[str] = None,
    sample_size: int = 10,
) -> Dict:
    """Per-entity completeness record appended to the sink after Phase 2"""
    done = set(report.processed)
    missing = [identifier for identifier in discovered if identifier not in done]
    return {
        'type': 'profile_summary',
        'username': entity.username,
        'status': status,
        'expectedCount': entity.claimed_total,
        'discoveredCount': len(discovered),
        'extractedCount': len(report.previous) + len(report.extracted),
        'filteredCount': len(report.filtered),
        'missingCount': len(missing),
        'missingSample': missing[:sample_size],
        'scrapedAt': datetime.now(timezone.utc).isoformat(),
    }
