"""Pytest configuration and fixtures."""
import pytest

from fakes import BrokerHub, FakeStreamRedis


@pytest.fixture
def hub():
    """Broker medium shared by every instance in a test."""
    return BrokerHub()


@pytest.fixture
def store_redis():
    """Stream storage shared by every instance in a test."""
    return FakeStreamRedis()
