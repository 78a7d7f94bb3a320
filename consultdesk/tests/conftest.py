import os

# keep the module-level app in consultdesk.main off the real home directory
os.environ.setdefault('CONSULTDESK_STATE_DB', ':memory:')

import pytest

from consultdesk.config import Settings
from consultdesk.db.state_store import StateStore

from .fakes import FakeClients, FakeClock


@pytest.fixture
def store():
    s = StateStore(':memory:')
    yield s
    s.close()


@pytest.fixture
def clients():
    return FakeClients()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(state_db=':memory:')
