"""Shared test fixtures for pytest.

ENVIRONMENT is pinned to `test` before any `aigen` import so settings never
read a developer's .env.dev file.
"""

import os


os.environ["ENVIRONMENT"] = "test"

import pytest

from aigen.core.config import get_settings
from aigen.services.generation import classifier
from tests.fixtures.generation_fakes import (
    FakeConnectivity,
    FakeLedger,
    FakePersistence,
    RecordingAlerts,
    make_alert_messages,
)


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Rebuild cached settings and the default classifier for every test."""
    get_settings.cache_clear()
    classifier._default_classifier = None
    yield
    get_settings.cache_clear()
    classifier._default_classifier = None


@pytest.fixture
def alert_messages():
    return make_alert_messages()


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def online():
    return FakeConnectivity(online=True)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def persistence():
    return FakePersistence()
