"""
Digest Generator

Rolls a tenant's unread clusters into a markdown digest with three ranked
sections: Top Picks (first 5), Big Stories (next 5), Quick Scan (the rest).

Windows are contiguous: a new digest starts where the previous one ended
(at most DIGEST_WINDOW_HOURS back), and (tenant_id, window_start) is unique,
so overlapping runs cannot produce two digests for the same window.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select, func, case, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wrangler.database import SessionLocal
from wrangler.models import Cluster, Digest, Feed, FeedWeight, Item, ReadState, utcnow
from wrangler.services.settings import get_pipeline_settings

logger = logging.getLogger(__name__)

TOP_PICKS_COUNT = 5
BIG_STORIES_COUNT = 5
DIGEST_WINDOW_HOURS = 24
ONE_LINER_MAX_LENGTH = 120

SECTION_TOP_PICKS = "top_picks"
SECTION_BIG_STORIES = "big_stories"
SECTION_QUICK_SCAN = "quick_scan"

SECTION_HEADINGS = [
    (SECTION_TOP_PICKS, "## Top Picks"),
    (SECTION_BIG_STORIES, "## Big Stories"),
    (SECTION_QUICK_SCAN, "## Quick Scan"),
]

_WEIGHT_ORDER = case(
    (Feed.weight == FeedWeight.PREFER, 3),
    (Feed.weight == FeedWeight.NEUTRAL, 2),
    else_=1,
)


def truncate(text: str, max_length: int = ONE_LINER_MAX_LENGTH) -> str:
    """Cut to max_length characters total, ending in '...' when shortened."""
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


def section_for(position: int) -> str:
    if position < TOP_PICKS_COUNT:
        return SECTION_TOP_PICKS
    if position < TOP_PICKS_COUNT + BIG_STORIES_COUNT:
        return SECTION_BIG_STORIES
    return SECTION_QUICK_SCAN


def build_digest_body(entries: list[dict]) -> str:
    """Markdown body; sections without entries are left out entirely."""
    lines = []
    for section, heading in SECTION_HEADINGS:
        section_entries = [e for e in entries if e['section'] == section]
        if not section_entries:
            continue
        lines.append(heading)
        for entry in section_entries:
            suffix = f": {entry['one_liner']}" if entry.get('one_liner') else ""
            lines.append(f"- {entry['headline']}{suffix}")
        lines.append("")
    return "\n".join(lines)


def _unread_condition():
    return and_(ReadState.read_at.is_(None), ReadState.not_interested_at.is_(None))


def count_unread_clusters(session: Session, tenant_id: UUID) -> int:
    return session.execute(
        select(func.count(Cluster.id))
        .outerjoin(ReadState, and_(ReadState.cluster_id == Cluster.id,
                                   ReadState.tenant_id == tenant_id))
        .where(Cluster.tenant_id == tenant_id, _unread_condition())
    ).scalar_one()


def get_latest_digest(session: Session, tenant_id: UUID) -> Optional[Digest]:
    return session.execute(
        select(Digest)
        .where(Digest.tenant_id == tenant_id)
        .order_by(Digest.window_end.desc())
        .limit(1)
    ).scalar_one_or_none()


def _ranked_unread_clusters(session: Session, tenant_id: UUID,
                            window_start: datetime, window_end: datetime):
    return session.execute(
        select(Cluster.id, Cluster.size, Item.title, Item.summary, Item.ai_summary,
               Item.published_at, Feed.weight)
        .join(Item, Item.id == Cluster.rep_item_id)
        .join(Feed, Feed.id == Item.feed_id)
        .outerjoin(ReadState, and_(ReadState.cluster_id == Cluster.id,
                                   ReadState.tenant_id == tenant_id))
        .where(
            Cluster.tenant_id == tenant_id,
            Item.tenant_id == tenant_id,
            Cluster.updated_at >= window_start,
            Cluster.updated_at <= window_end,
            _unread_condition(),
        )
        .order_by(_WEIGHT_ORDER.desc(), Cluster.size.desc(), Item.published_at.desc())
    ).all()


def generate_digest(tenant_id: UUID, session: Optional[Session] = None,
                    now: Optional[datetime] = None) -> Optional[Digest]:
    """
    Create the digest for the current window.

    Skipped (returns None, no writes) when a digest already covers now or
    no unread clusters were updated in the window. Runs in one transaction:
    any failure rolls back and is re-raised.

    Args:
        tenant_id: Tenant to digest
        session: Optional database session (caller commits when provided)
        now: Window end

    Returns:
        The new Digest, or None when skipped
    """
    close_session = session is None
    if session is None:
        session = SessionLocal()

    now = now or utcnow()
    try:
        previous = get_latest_digest(session, tenant_id)
        if previous is not None and previous.window_end >= now:
            logger.info(f"Digest already exists for current window (tenant {tenant_id}), skipping")
            return None

        window_start = now - timedelta(hours=DIGEST_WINDOW_HOURS)
        if previous is not None and previous.window_end > window_start:
            window_start = previous.window_end

        rows = _ranked_unread_clusters(session, tenant_id, window_start, now)
        if not rows:
            logger.info(f"No unread clusters in window for tenant {tenant_id}, skipping digest")
            return None

        entries = []
        for position, row in enumerate(rows):
            summary = row.summary or row.ai_summary
            entries.append({
                'cluster_id': str(row.id),
                'headline': row.title,
                'section': section_for(position),
                'one_liner': truncate(summary) if summary else None,
                'size': row.size,
                'weight': (row.weight or FeedWeight.NEUTRAL).value,
            })

        digest = Digest(
            tenant_id=tenant_id,
            window_start=window_start,
            window_end=now,
            title=f"Digest for {window_start.date().isoformat()} - {now.date().isoformat()}",
            body=build_digest_body(entries),
            entries=entries,
            created_at=now,
        )

        try:
            with session.begin_nested():
                session.add(digest)
                session.flush()
        except IntegrityError:
            logger.info(f"Digest for window starting {window_start} already created concurrently")
            return None

        if close_session:
            session.commit()

        logger.info(json.dumps({
            'event': 'digest_generated',
            'tenant_id': str(tenant_id),
            'entries': len(entries),
            'window_start': window_start.isoformat(),
            'window_end': now.isoformat(),
        }))
        return digest

    except Exception:
        if close_session:
            session.rollback()
        raise
    finally:
        if close_session:
            session.close()


def should_generate_digest(session: Session, tenant_id: UUID,
                           now: Optional[datetime] = None) -> bool:
    """
    Trigger policy:
    - unread backlog >= digest_backlog_threshold, regardless of recency
    - otherwise no digest within digest_away_hours and a non-empty backlog
    """
    now = now or utcnow()
    settings = get_pipeline_settings(session, tenant_id)
    backlog = count_unread_clusters(session, tenant_id)

    if backlog >= settings.digest_backlog_threshold:
        logger.info(f"Digest backlog trigger for tenant {tenant_id}: {backlog} unread")
        return True

    recent = session.execute(
        select(Digest.id)
        .where(
            Digest.tenant_id == tenant_id,
            or_(
                Digest.created_at >= now - timedelta(hours=settings.digest_away_hours),
                Digest.window_end >= now - timedelta(hours=settings.digest_away_hours),
            ),
        )
        .limit(1)
    ).scalar_one_or_none()

    if recent is None and backlog > 0:
        logger.info(f"Digest time trigger for tenant {tenant_id}: no digest in {settings.digest_away_hours}h")
        return True
    return False


def maybe_generate_digest(tenant_id: UUID, session: Optional[Session] = None,
                          now: Optional[datetime] = None) -> Optional[Digest]:
    """Generate a digest only when the trigger policy says so."""
    close_session = session is None
    if session is None:
        session = SessionLocal()

    try:
        if not should_generate_digest(session, tenant_id, now=now):
            return None
        digest = generate_digest(tenant_id, session=session, now=now)
        if close_session:
            session.commit()
        return digest
    except Exception:
        if close_session:
            session.rollback()
        raise
    finally:
        if close_session:
            session.close()
