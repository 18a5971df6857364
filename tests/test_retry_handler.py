import random

import pytest

from harvester.config import RetryConfig
from harvester.core.context import EntityRef
from harvester.core.credential_store import CredentialStatus, CredentialStore
from harvester.core.errors import (
    BlockedError,
    ErrorKind,
    JobCancelled,
    MalformedResponseError,
    NonRetryableError,
    PoolExhaustedError,
    RateLimitedError,
    ServerOrNetworkError,
)
from harvester.core.pipeline import DiscoveryPipeline
from harvester.core.retry_handler import RetryOrchestrator, calculate_backoff

from helpers import html_response


class ScriptedOperation:
    """Raises the scripted errors in order, then returns 'ok'"""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.attempts = []

    def __call__(self, attempt):
        self.attempts.append(attempt)
        if self.errors:
            raise self.errors.pop(0)
        return 'ok'


def test_backoff_is_bounded():
    rng = random.Random(3)
    for attempt in range(1, 10):
        delay = calculate_backoff(attempt, base_delay=1.0, max_delay=15.0, rng=rng)
        assert 0 < delay <= 15.0


def test_backoff_doubles_per_attempt_without_jitter():
    delays = [calculate_backoff(n, base_delay=1.0, max_delay=100.0, jitter_range=(1.0, 1.0)) for n in range(1, 6)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]


def test_backoff_jitter_applies_before_exponent():
    delay = calculate_backoff(3, base_delay=1.0, max_delay=100.0, jitter_range=(0.5, 0.5))
    assert delay == 2.0


def test_pool_exhausted_delay_is_a_floor():
    orchestrator = RetryOrchestrator(RetryConfig(base_delay=0.1, pool_exhausted_delay=5.0), rng=random.Random(1))
    assert orchestrator.get_delay(1, ErrorKind.POOL_EXHAUSTED) == 5.0
    assert orchestrator.get_delay(1, ErrorKind.SERVER_OR_NETWORK) < 5.0


def test_timeout_grows_per_attempt():
    orchestrator = RetryOrchestrator(RetryConfig(request_timeout=10.0, timeout_multiplier=1.5))
    assert orchestrator.timeout_for(1) == 10.0
    assert orchestrator.timeout_for(3) == 22.5


def test_success_on_first_attempt(pipeline):
    context = pipeline.new_context(EntityRef('alice'))
    operation = ScriptedOperation()

    assert pipeline.retry.execute(operation, context, label='probe') == 'ok'
    assert len(operation.attempts) == 1
    assert operation.attempts[0].session.usage_count == 1
    assert context.metrics.snapshot()['strategies']['probe']['successes'] == 1


def test_non_retryable_aborts_immediately(pipeline):
    context = pipeline.new_context(EntityRef('alice'))
    operation = ScriptedOperation(NonRetryableError("gone", status_code=404))

    with pytest.raises(NonRetryableError) as info:
        pipeline.retry.execute(operation, context)

    assert len(operation.attempts) == 1
    assert info.value.attempts == 1


def test_unknown_exceptions_are_not_retried(pipeline):
    context = pipeline.new_context(EntityRef('alice'))
    operation = ScriptedOperation(RuntimeError("unexpected"))

    with pytest.raises(NonRetryableError):
        pipeline.retry.execute(operation, context)
    assert len(operation.attempts) == 1


def test_transient_failures_exhaust_the_budget(pipeline):
    context = pipeline.new_context(EntityRef('alice'))
    operation = ScriptedOperation(*[ServerOrNetworkError("502") for _ in range(5)])

    with pytest.raises(ServerOrNetworkError) as info:
        pipeline.retry.execute(operation, context, max_attempts=3)

    assert len(operation.attempts) == 3
    assert info.value.attempts == 3


def test_block_rotates_session_and_blocks_cookie_set(pipeline, store):
    context = pipeline.new_context(EntityRef('alice'))
    operation = ScriptedOperation(BlockedError("forbidden", status_code=403))

    assert pipeline.retry.execute(operation, context) == 'ok'

    first, second = operation.attempts
    assert first.session.id != second.session.id
    assert first.session.retired
    assert store.status(first.session.credential_set.id) == CredentialStatus.BLOCKED
    assert store.status(second.session.credential_set.id) == CredentialStatus.ACTIVE
    assert context.metrics.session_rotations == 1


def test_rate_limit_also_rotates(pipeline, store):
    context = pipeline.new_context(EntityRef('alice'))
    operation = ScriptedOperation(RateLimitedError("429", status_code=429))

    pipeline.retry.execute(operation, context)

    assert store.blocked_count == 1
    assert not context.refresh_pending


def test_repeated_auth_failures_trigger_proactive_refresh(pipeline, transport, config):
    transport.route(
        'GET', config.upstream.home_url,
        html_response('<script>"csrf_token":"csrf-refreshed"</script>'),
        exact=True,
    )
    context = pipeline.new_context(EntityRef('alice'))
    operation = ScriptedOperation(BlockedError("401", status_code=401), BlockedError("401", status_code=401))

    assert pipeline.retry.execute(operation, context) == 'ok'

    assert context.metrics.proactive_refreshes == 1
    assert len(transport.calls_to(config.upstream.home_url, 'GET')) == 1
    third = operation.attempts[2].session
    assert third.credential_set.cookies['csrftoken'] == 'csrf-refreshed'


def test_auth_failures_outside_window_do_not_refresh(pipeline, clock):
    context = pipeline.new_context(EntityRef('alice'))
    assert not context.note_auth_failure()
    clock.advance(301)
    assert not context.note_auth_failure()
    assert not context.refresh_pending
    assert context.note_auth_failure()
    assert context.refresh_pending


def test_malformed_response_retried_once_then_escalated(pipeline):
    context = pipeline.new_context(EntityRef('alice'))
    operation = ScriptedOperation(*[MalformedResponseError("bad shape") for _ in range(3)])

    with pytest.raises(MalformedResponseError):
        pipeline.retry.execute(operation, context)
    assert len(operation.attempts) == 2


def test_pool_exhaustion_is_retried_then_raised(transport, config, clock):
    pipeline = DiscoveryPipeline(CredentialStore(config.credentials, clock=clock), transport, config, clock=clock)
    context = pipeline.new_context(EntityRef('alice'))
    operation = ScriptedOperation()

    with pytest.raises(PoolExhaustedError) as info:
        pipeline.retry.execute(operation, context)

    assert info.value.kind == ErrorKind.POOL_EXHAUSTED
    assert info.value.attempts == config.retry.max_attempts
    assert operation.attempts == []


def test_cancelled_before_first_attempt(pipeline):
    pipeline.cancel_event.set()
    context = pipeline.new_context(EntityRef('alice'))
    operation = ScriptedOperation()

    with pytest.raises(JobCancelled):
        pipeline.retry.execute(operation, context)
    assert operation.attempts == []


def test_cancel_during_operation_propagates(pipeline):
    context = pipeline.new_context(EntityRef('alice'))

    def operation(attempt):
        raise JobCancelled("stop")

    with pytest.raises(JobCancelled):
        pipeline.retry.execute(operation, context)
    assert context.metrics.snapshot()['strategies']['operation']['errors'] == {}
