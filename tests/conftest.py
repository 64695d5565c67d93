"""
Root pytest configuration for RSS Wrangler tests

Points the app at an in-memory SQLite database, builds the schema for each
test and provides common fixtures.
"""
import sys
import os

# Must be set before wrangler.database is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("FEED_RESOLVE_DNS", "false")

import pytest

# Add project root to Python path so tests can import wrangler
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)


@pytest.fixture(scope="function", autouse=True)
def schema():
    """Fresh schema per test."""
    from wrangler.database import Base, engine
    import wrangler.models  # noqa: F401

    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db_session(schema):
    """
    Provides a database session for tests.

    All test sessions share one SQLite connection, so commit before calling
    code that opens its own session.
    """
    from wrangler.database import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def tenant(db_session):
    from tests.fixtures.sample_data import create_tenant

    tenant = create_tenant()
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture
def feed(db_session, tenant):
    from tests.fixtures.sample_data import create_feed

    feed = create_feed(tenant.id)
    db_session.add(feed)
    db_session.commit()
    return feed
