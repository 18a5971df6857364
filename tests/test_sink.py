import threading

from harvester.sink import DiscoveryStateStore, JsonlSink

from helpers import make_codes


def test_jsonl_sink_appends_from_threads(tmp_path):
    sink = JsonlSink(tmp_path / 'out' / 'records.jsonl')

    threads = [threading.Thread(target=sink.append, args=({'n': n, 'caption': 'ü'},)) for n in range(25)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    records = sink.read_all()
    assert sink.count == 25
    assert sorted(r['n'] for r in records) == list(range(25))


def test_state_persists_between_runs(tmp_path):
    path = tmp_path / 'state.json'
    state = DiscoveryStateStore(path)
    state.save_discovery('alice', make_codes(30), 'success', expected_count=30, user_id='1')
    state.mark_extracted('alice', make_codes(2))
    state.mark_extracted('alice', make_codes(3))

    reloaded = DiscoveryStateStore(path)
    assert reloaded.discovered('alice') == make_codes(30)
    assert reloaded.extracted('alice') == make_codes(3)
    assert reloaded.get('alice')['user_id'] == '1'
    assert reloaded.get('nobody') == {}


def test_unreadable_state_is_ignored(tmp_path):
    path = tmp_path / 'state.json'
    path.write_text('{not json')
    assert DiscoveryStateStore(path).state == {}


def test_needs_discovery_rules(tmp_path):
    state = DiscoveryStateStore(tmp_path / 'state.json')

    assert state.needs_discovery('unknown')

    state.save_discovery('done', make_codes(80), 'success', expected_count=100)
    assert not state.needs_discovery('done')

    # Below 60% of the claimed total
    state.save_discovery('thin', make_codes(50), 'partial', expected_count=100)
    assert state.needs_discovery('thin')

    # Large collections only need 100 items to count as complete
    state.save_discovery('huge', make_codes(100), 'partial', expected_count=5000)
    assert not state.needs_discovery('huge')

    state.save_discovery('no_claim_small', make_codes(19), 'partial')
    assert state.needs_discovery('no_claim_small')
    state.save_discovery('no_claim', make_codes(20), 'partial')
    assert not state.needs_discovery('no_claim')

    state.save_discovery('failed', [], 'exhausted', expected_count=10)
    assert state.needs_discovery('failed')
