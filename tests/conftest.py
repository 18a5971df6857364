import random

import pytest

from harvester.config import HarvesterConfig
from harvester.core.credential_store import CredentialStore
from harvester.core.pipeline import DiscoveryPipeline

from helpers import FakeClock, FakeTransport


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def config(tmp_path):
    """Default configuration with every pause and backoff set to zero"""
    config = HarvesterConfig()
    config.throttle.base_delay_range = (0.0, 0.0)
    config.throttle.block_penalty = 0.0
    config.throttle.spacing_penalty = 0.0
    config.retry.base_delay = 0.0
    config.retry.pool_exhausted_delay = 0.0
    config.pipeline.page_pause_range = (0.0, 0.0)
    config.credentials.guest_pool_size = 0
    config.job.data_dir = tmp_path / 'data'
    config.job.log_dir = tmp_path / 'logs'
    return config


@pytest.fixture
def store(config, clock, rng):
    store = CredentialStore(config.credentials, auth_cookies=config.upstream.auth_cookies, clock=clock, rng=rng)
    for index in range(1, 21):
        store.add_credential_set({'csrftoken': f'csrf{index}', 'mid': f'mid{index}'})
    return store


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def pipeline(store, transport, config, clock, rng):
    return DiscoveryPipeline(store, transport, config, clock=clock, rng=rng)
