"""
Test data factories for creating sample database records

Provides factory functions for all entities with sensible defaults
"""
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from wrangler.models import (
    Cluster, ClusterMember, Feed, FeedWeight, Item, ReadState, Tenant, to_signed64,
)
from wrangler.services.features import item_text, simhash
from wrangler.services.feed_parser import ParsedItem
from wrangler.services.url_canonicalizer import canonicalize_url


def create_tenant(name="Test Tenant", **kwargs):
    """Create a Tenant instance (not committed)."""
    return Tenant(id=kwargs.pop('id', uuid4()), name=name, **kwargs)


def create_feed(tenant_id, url=None, title="Test Feed", weight=FeedWeight.NEUTRAL, **kwargs):
    """
    Create a Feed instance with default test values

    Args:
        tenant_id: Required owning tenant
        url: Feed URL (generates unique URL if None)
        weight: Source weight
        **kwargs: Additional field overrides

    Returns:
        Feed instance (not committed to database)
    """
    if url is None:
        url = f"https://feeds.example.com/{uuid4()}.xml"
    return Feed(
        id=kwargs.pop('id', uuid4()),
        tenant_id=tenant_id,
        url=url,
        title=title,
        weight=weight,
        muted=kwargs.pop('muted', False),
        consecutive_failures=kwargs.pop('consecutive_failures', 0),
        **kwargs
    )


def create_item(tenant_id, feed_id, title="Test story headline", summary=None,
                published_at=None, guid=None, url=None, **kwargs):
    """Create an Item with its fingerprint already computed (not committed)."""
    if url is None:
        url = f"https://news.example.com/story/{uuid4()}"
    if published_at is None:
        published_at = datetime.now(timezone.utc) - timedelta(hours=1)
    return Item(
        id=kwargs.pop('id', uuid4()),
        tenant_id=tenant_id,
        feed_id=feed_id,
        guid=guid if guid is not None else url,
        url=url,
        canonical_url=canonicalize_url(url),
        published_at=published_at,
        title=title,
        summary=summary,
        simhash=to_signed64(simhash(item_text(title, summary))),
        **kwargs
    )


def add_cluster(session, tenant_id, items, updated_at=None, read_at=None,
                saved_at=None, not_interested_at=None):
    """
    Persist a cluster made of the given (already added) items.

    The first item is the representative.
    """
    now = datetime.now(timezone.utc)
    cluster = Cluster(
        id=uuid4(),
        tenant_id=tenant_id,
        rep_item_id=items[0].id,
        size=len(items),
        created_at=updated_at or now,
        updated_at=updated_at or now,
    )
    session.add(cluster)
    session.flush()
    for item in items:
        session.add(ClusterMember(cluster_id=cluster.id, item_id=item.id, tenant_id=tenant_id))
    if read_at or saved_at or not_interested_at:
        session.add(ReadState(
            tenant_id=tenant_id,
            cluster_id=cluster.id,
            read_at=read_at,
            saved_at=saved_at,
            not_interested_at=not_interested_at,
        ))
    session.flush()
    return cluster


def make_parsed_item(title="Parsed story", guid="guid-1", url=None, summary="Summary text",
                     published_at=None, **kwargs):
    """Create a ParsedItem as the parser would produce it."""
    if url is None:
        url = f"https://news.example.com/{guid or uuid4()}"
    return ParsedItem(
        guid=guid,
        url=url,
        canonical_url=canonicalize_url(url),
        title=title,
        summary=summary,
        published_at=published_at or datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc),
        author=kwargs.pop('author', None),
        hero_image_url=kwargs.pop('hero_image_url', None),
    )


# Shared story texts: long enough that a one-word edit keeps SimHash close
STORY_TEXT = (
    "City council approves new riverside park plan after months of public hearings "
    "residents packed the chamber to support funding for trails playgrounds gardens "
    "and a restored boathouse near the old mill district where volunteers have "
    "cleaned debris every spring while engineers studied flood risk drainage "
    "lighting parking and wildlife habitat along both banks of the river"
)

UNRELATED_TEXT = (
    "Quarterly semiconductor earnings surged as chipmakers reported record demand "
    "from datacenter customers buying accelerators memory modules networking "
    "switches cooling hardware power supplies software licenses analysts raised "
    "forecasts despite tariffs currency swings supply constraints labor shortages "
    "shipping delays rising interest rates inventory corrections pricing pressure"
)
