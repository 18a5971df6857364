import random
import threading

import pytest

from harvester.config import ThrottleConfig
from harvester.core.credential_store import Session
from harvester.core.errors import JobCancelled
from harvester.core.throttling import ThrottlingController, interruptible_sleep

from helpers import FakeClock


def make_controller(clock=None, **overrides):
    config = ThrottleConfig(**overrides)
    return ThrottlingController(config, clock=clock or FakeClock(), rng=random.Random(7))


def test_base_delay_within_range():
    controller = make_controller(base_delay_range=(1.0, 3.0))
    session = Session(id='s1', user_agent='ua')
    for _ in range(50):
        assert 1.0 <= controller.delay_for(session) <= 3.0


def test_block_penalty_applies_then_decays():
    clock = FakeClock()
    controller = make_controller(clock, base_delay_range=(0.0, 0.0), block_penalty=2.0, penalty_decay=60.0)
    session = Session(id='s1', user_agent='ua')

    controller.record_outcome(session, was_blocked=True)
    assert controller.delay_for(session) == 2.0

    clock.advance(61)
    assert controller.delay_for(session) == 0.0


def test_spacing_penalty_for_close_requests():
    clock = FakeClock()
    controller = make_controller(clock, base_delay_range=(0.0, 0.0), spacing_penalty=1.0, min_spacing=0.5)
    session = Session(id='s1', user_agent='ua')

    assert controller.wait(session) == 0.0
    assert controller.delay_for(session) == 1.0

    clock.advance(1)
    assert controller.delay_for(session) == 0.0


def test_delay_is_clamped():
    controller = make_controller(base_delay_range=(5.0, 5.0), block_penalty=10.0, max_delay=8.0)
    session = Session(id='s1', user_agent='ua')
    controller.record_outcome(session, was_blocked=True)
    assert controller.delay_for(session) == 8.0


def test_history_is_per_session():
    controller = make_controller(base_delay_range=(0.0, 0.0), block_penalty=2.0)
    blocked = Session(id='s1', user_agent='ua')
    healthy = Session(id='s2', user_agent='ua')

    controller.record_outcome(blocked, was_blocked=True)

    assert controller.delay_for(blocked) == 2.0
    assert controller.delay_for(healthy) == 0.0


def test_handover_moves_history_to_replacement():
    controller = make_controller(base_delay_range=(0.0, 0.0), block_penalty=2.0)
    old = Session(id='s1', user_agent='ua')
    new = Session(id='s2', user_agent='ua')
    controller.record_outcome(old, was_blocked=True)

    controller.handover(old.id, new.id)

    assert controller.delay_for(new) == 2.0
    assert controller.stats['total_blocks'] == 1


def test_wait_raises_when_cancelled():
    controller = make_controller(base_delay_range=(0.0, 0.0))
    event = threading.Event()
    event.set()
    with pytest.raises(JobCancelled):
        controller.wait(Session(id='s1', user_agent='ua'), event)


def test_interruptible_sleep_aborts_early():
    event = threading.Event()
    timer = threading.Timer(0.05, event.set)
    timer.start()
    try:
        with pytest.raises(JobCancelled):
            interruptible_sleep(30, event)
    finally:
        timer.cancel()


def test_interruptible_sleep_returns_when_not_cancelled():
    interruptible_sleep(0, threading.Event())
    interruptible_sleep(0)
