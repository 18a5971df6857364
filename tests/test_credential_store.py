import json
import threading

import pytest

from harvester.config import CredentialConfig
from harvester.core.credential_store import CredentialStatus, CredentialStore
from harvester.core.errors import PoolExhaustedError

from helpers import FakeClock


def make_store(count=3, clock=None, **overrides):
    config = CredentialConfig(**overrides)
    store = CredentialStore(config, clock=clock or FakeClock())
    for index in range(count):
        store.add_credential_set({'csrftoken': f'c{index}', 'mid': f'm{index}'})
    return store


def test_mark_blocked_is_idempotent():
    clock = FakeClock()
    store = make_store(1, clock=clock)
    set_id = store.list_sets()[0].id

    store.mark_blocked(set_id)
    blocked_at = store.credential_sets[set_id].blocked_at
    clock.advance(30)
    store.mark_blocked(set_id)

    assert store.credential_sets[set_id].blocked_at == blocked_at
    assert store.blocked_count == 1


def test_blocked_set_returns_after_cooldown():
    clock = FakeClock()
    store = make_store(1, clock=clock, cooldown_seconds=180)
    set_id = store.list_sets()[0].id

    store.mark_blocked(set_id)
    clock.advance(179)
    assert store.status(set_id) == CredentialStatus.BLOCKED
    assert store.acquire() is None

    clock.advance(1)
    assert store.status(set_id) == CredentialStatus.ACTIVE
    assert store.acquire().id == set_id


def test_acquire_prefers_authenticated_then_least_recently_used():
    clock = FakeClock()
    store = make_store(2, clock=clock)
    real = store.add_credential_set({'sessionid': 's', 'ds_user_id': '1', 'csrftoken': 'c'})
    assert real.authenticated

    first = store.acquire()
    assert first.id == real.id

    clock.advance(1)
    second = store.acquire()
    store.release(second.id)
    clock.advance(1)
    third = store.acquire()
    assert third.id != second.id


def test_acquire_skips_excluded_set_while_another_is_free():
    store = make_store(2)
    real = store.add_credential_set({'sessionid': 's', 'ds_user_id': '1', 'csrftoken': 'c'})

    assert store.acquire(exclude=real.id).id != real.id
    assert store.open_session(exclude=real.id).credential_set.id != real.id


def test_excluded_set_is_still_used_when_it_is_the_only_one():
    store = make_store(1)
    only = store.list_sets()[0]
    assert store.acquire(exclude=only.id).id == only.id


def test_concurrent_acquire_never_leases_twice():
    store = make_store(5)
    leased = []
    barrier = threading.Barrier(20)
    lock = threading.Lock()

    def worker():
        barrier.wait()
        credential_set = store.acquire()
        if credential_set is not None:
            with lock:
                leased.append(credential_set.id)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(leased) == 5
    assert len(set(leased)) == 5


def test_open_session_raises_when_pool_is_exhausted():
    store = make_store(1)
    store.open_session()
    with pytest.raises(PoolExhaustedError):
        store.open_session()


def test_retire_session_returns_cookie_set_and_drops_tokens():
    store = make_store(1)
    session = store.open_session()
    session.tokens = object()

    store.retire_session(session)

    assert session.retired
    assert session.tokens is None
    assert not session.credential_set.leased
    assert store.open_session().credential_set.id == session.credential_set.id


def test_record_use_retires_at_usage_ceiling():
    store = make_store(1, session_max_usage=2)
    session = store.open_session()
    store.record_use(session)
    assert not session.retired
    store.record_use(session)
    assert session.retired


def test_worn_out_sets_are_not_leased():
    store = make_store(1, max_uses_per_set=1)
    set_id = store.acquire().id
    store.release(set_id)
    assert store.acquire() is None


def test_cookie_file_round_trip(tmp_path):
    path = tmp_path / 'cookies.json'
    path.write_text(json.dumps([
        {'sessionid': 'abc', 'ds_user_id': '1', 'csrftoken': 'tok'},
        {'sessionid': 'def', 'csrftoken': 'tok'},
    ]))
    store = CredentialStore(clock=FakeClock())

    assert store.load_cookie_file(path) == 1
    assert store.list_sets()[0].authenticated

    out = tmp_path / 'saved' / 'cookies.json'
    store.save_cookie_file(out)
    assert json.loads(out.read_text()) == [{'sessionid': 'abc', 'ds_user_id': '1', 'csrftoken': 'tok'}]


def test_missing_cookie_file_loads_nothing(tmp_path):
    store = CredentialStore()
    assert store.load_cookie_file(tmp_path / 'absent.json') == 0


def test_cookie_lookup_treats_placeholder_as_missing():
    store = make_store(0)
    credential_set = store.add_credential_set({'csrftoken': 'missing', 'mid': 'x'})
    assert credential_set.cookie('csrftoken') is None
    assert credential_set.cookie('mid') == 'x'
    assert credential_set.cookie_header == "csrftoken=missing; mid=x"
