"""
Pytest configuration and fixtures for walletsync tests.
"""

import random

import pytest
from _walletsync_test_helpers import FakeBackend, make_script
from walletsync.wallet.database import MemoryDatabase
from walletsync.wallet.models import KeychainKind


@pytest.fixture
def backend() -> FakeBackend:
    """Empty fake backend; tests populate histories, headers and transactions."""
    return FakeBackend()


@pytest.fixture
def database() -> MemoryDatabase:
    """Database watching external scripts 0..4 and internal scripts 0..4."""
    db = MemoryDatabase()
    for index in range(5):
        db.set_script_pubkey(make_script(KeychainKind.EXTERNAL, index), KeychainKind.EXTERNAL, index)
        db.set_script_pubkey(make_script(KeychainKind.INTERNAL, index), KeychainKind.INTERNAL, index)
    return db


@pytest.fixture
def rng() -> random.Random:
    """Seeded random source so the keychain order is reproducible."""
    return random.Random(7)
