"""
Pytest configuration for integration tests

Integration tests run the services against the per-test SQLite schema built
in the root conftest. Code under test that opens its own session shares the
same connection, so tests commit their setup before calling it.
"""
from datetime import datetime, timezone

import pytest

from wrangler.models import FeedWeight
from tests.fixtures.sample_data import create_feed, create_tenant


@pytest.fixture
def now():
    """Fixed reference time for window calculations."""
    return datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def other_tenant(db_session):
    tenant = create_tenant(name="Other Tenant")
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture
def preferred_feed(db_session, tenant):
    feed = create_feed(tenant.id, title="Preferred Feed", weight=FeedWeight.PREFER)
    db_session.add(feed)
    db_session.commit()
    return feed


@pytest.fixture
def deprioritized_feed(db_session, tenant):
    feed = create_feed(tenant.id, title="Deprioritized Feed", weight=FeedWeight.DEPRIORITIZE)
    db_session.add(feed)
    db_session.commit()
    return feed
