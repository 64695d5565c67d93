"""
Item Upsert Writer

Idempotently persists parsed items for one feed. Items are split by identity
strategy:
- guid present:  (tenant_id, feed_id, guid)
- guid missing:  (tenant_id, feed_id, canonical_url, published_at)

Each partition is written as one INSERT ... ON CONFLICT DO UPDATE batch; if
the batch fails, the partition is retried row by row so one bad item cannot
fail the whole feed. Only title, summary and hero image are updated on
conflict; identity fields are never rewritten.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import select, func, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from wrangler.models import Item, utcnow
from wrangler.services.feed_parser import ParsedItem

logger = logging.getLogger(__name__)

KEY_GUID = "guid"
KEY_CANONICAL = "canonical"

_ITEMS = Item.__table__

_CONFLICT_TARGETS = {
    KEY_GUID: (["tenant_id", "feed_id", "guid"], text("guid IS NOT NULL")),
    KEY_CANONICAL: (["tenant_id", "feed_id", "canonical_url", "published_at"], text("guid IS NULL")),
}


class UpsertError(Exception):
    """Storage failure for one item, normalized from whatever the driver raised."""

    @classmethod
    def from_exception(cls, exc: BaseException) -> "UpsertError":
        if isinstance(exc, UpsertError):
            return exc
        error = cls(str(exc) or type(exc).__name__)
        error.__cause__ = exc
        return error


@dataclass
class UpsertedItem:
    id: UUID
    guid: Optional[str]
    canonical_url: str
    published_at: datetime
    is_new: bool


@dataclass
class UpsertFailure:
    item: ParsedItem
    error: UpsertError


@dataclass
class UpsertResult:
    succeeded: list[UpsertedItem] = field(default_factory=list)
    failed: list[UpsertFailure] = field(default_factory=list)

    @property
    def new_item_ids(self) -> list[UUID]:
        return [row.id for row in self.succeeded if row.is_new]


def natural_key(item: ParsedItem) -> tuple:
    if item.guid:
        return (KEY_GUID, item.guid)
    return (KEY_CANONICAL, item.canonical_url, item.published_at)


def upsert_items(session: Session, tenant_id: UUID, feed_id: UUID,
                 items: list[ParsedItem]) -> UpsertResult:
    """
    Insert-or-update parsed items for one feed.

    Runs inside the caller's transaction using savepoints, so a failed batch
    or row is rolled back on its own without losing the others.

    Args:
        session: Database session
        tenant_id: Owning tenant
        feed_id: Source feed
        items: Parsed items (duplicates by natural key keep the last one)

    Returns:
        UpsertResult with succeeded rows (is_new set) and per-item failures
    """
    result = UpsertResult()

    partitions = {KEY_GUID: {}, KEY_CANONICAL: {}}
    for item in items:
        key = natural_key(item)
        partitions[key[0]][key] = item

    for strategy, keyed in partitions.items():
        if not keyed:
            continue
        batch = list(keyed.values())
        try:
            with session.begin_nested():
                result.succeeded.extend(_upsert_batch(session, tenant_id, feed_id, batch, strategy))
        except Exception as e:
            logger.warning(
                f"Batch upsert of {len(batch)} {strategy}-keyed items failed for feed "
                f"{feed_id}, retrying individually: {e}"
            )
            for item in batch:
                try:
                    with session.begin_nested():
                        result.succeeded.extend(
                            _upsert_batch(session, tenant_id, feed_id, [item], strategy)
                        )
                except Exception as item_error:
                    error = UpsertError.from_exception(item_error)
                    logger.error(f"Upsert failed for item '{(item.title or '')[:60]}': {error}")
                    result.failed.append(UpsertFailure(item=item, error=error))

    new_count = sum(1 for row in result.succeeded if row.is_new)
    logger.info(
        f"Upserted {len(result.succeeded)} items for feed {feed_id} "
        f"({new_count} new, {len(result.failed)} failed)"
    )
    return result


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise UpsertError(f"Unsupported database dialect for upsert: {dialect}")


def _existing_keys(session: Session, tenant_id: UUID, feed_id: UUID,
                   batch: list[ParsedItem], strategy: str) -> set:
    scope = (Item.tenant_id == tenant_id, Item.feed_id == feed_id)
    if strategy == KEY_GUID:
        guids = [item.guid for item in batch]
        rows = session.execute(
            select(Item.guid).where(*scope, Item.guid.in_(guids))
        ).all()
        return {(KEY_GUID, row.guid) for row in rows}

    urls = list({item.canonical_url for item in batch})
    rows = session.execute(
        select(Item.canonical_url, Item.published_at)
        .where(*scope, Item.guid.is_(None), Item.canonical_url.in_(urls))
    ).all()
    return {(KEY_CANONICAL, row.canonical_url, row.published_at) for row in rows}


def _upsert_batch(session: Session, tenant_id: UUID, feed_id: UUID,
                  batch: list[ParsedItem], strategy: str) -> list[UpsertedItem]:
    insert = _insert_for(session)
    existing = _existing_keys(session, tenant_id, feed_id, batch, strategy)

    now = utcnow()
    rows = [
        {
            "id": uuid4(),
            "tenant_id": tenant_id,
            "feed_id": feed_id,
            "guid": item.guid,
            "url": item.url,
            "canonical_url": item.canonical_url,
            "published_at": item.published_at,
            "title": item.title,
            "summary": item.summary,
            "author": item.author,
            "hero_image_url": item.hero_image_url,
            "created_at": now,
        }
        for item in batch
    ]

    index_elements, index_where = _CONFLICT_TARGETS[strategy]
    stmt = insert(_ITEMS).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        index_where=index_where,
        set_={
            "title": stmt.excluded.title,
            "summary": stmt.excluded.summary,
            "hero_image_url": func.coalesce(stmt.excluded.hero_image_url, _ITEMS.c.hero_image_url),
        },
    ).returning(_ITEMS.c.id, _ITEMS.c.guid, _ITEMS.c.canonical_url, _ITEMS.c.published_at)

    upserted = []
    for row in session.execute(stmt).all():
        if row.guid is not None:
            key = (KEY_GUID, row.guid)
        else:
            key = (KEY_CANONICAL, row.canonical_url, row.published_at)
        upserted.append(UpsertedItem(
            id=row.id,
            guid=row.guid,
            canonical_url=row.canonical_url,
            published_at=row.published_at,
            is_new=key not in existing,
        ))
    return upserted
