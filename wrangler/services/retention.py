"""
Retention Cleanup Job

Per tenant, in one transaction:
1. Auto-mark unread clusters whose representative is older than
   unread_max_age_days as read
2. Purge read, unsaved clusters read more than read_purge_days ago
3. Purge items older than read_purge_days that no cluster references

No-op when neither setting is configured.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select, delete, and_, exists
from sqlalchemy.orm import Session

from wrangler.database import SessionLocal
from wrangler.models import Cluster, ClusterMember, Item, ReadState, utcnow
from wrangler.services.settings import get_pipeline_settings

logger = logging.getLogger(__name__)


def run_retention_cleanup(tenant_id: UUID, session: Optional[Session] = None,
                          now: Optional[datetime] = None) -> dict:
    """
    Apply the tenant's retention settings.

    Any failure rolls back the whole run and is re-raised.

    Returns:
        Stats dict: applied, auto_marked_read, purged_clusters, purged_items
    """
    close_session = session is None
    if session is None:
        session = SessionLocal()

    now = now or utcnow()
    stats = {
        'applied': False,
        'auto_marked_read': 0,
        'purged_clusters': 0,
        'purged_items': 0,
    }

    try:
        settings = get_pipeline_settings(session, tenant_id)
        if settings.unread_max_age_days is None and settings.read_purge_days is None:
            return stats

        stats['applied'] = True

        if settings.unread_max_age_days is not None:
            cutoff = now - timedelta(days=settings.unread_max_age_days)
            stats['auto_marked_read'] = _mark_stale_unread(session, tenant_id, cutoff, now)

        if settings.read_purge_days is not None:
            cutoff = now - timedelta(days=settings.read_purge_days)
            stats['purged_clusters'] = _purge_read_clusters(session, tenant_id, cutoff)
            stats['purged_items'] = _purge_orphan_items(session, tenant_id, cutoff)

        session.flush()
        if close_session:
            session.commit()

        logger.info(json.dumps({
            'event': 'retention_cleanup_complete',
            'tenant_id': str(tenant_id),
            **stats,
        }))
        return stats

    except Exception:
        if close_session:
            session.rollback()
        logger.error(f"Retention cleanup failed for tenant {tenant_id}, rolled back")
        raise
    finally:
        if close_session:
            session.close()


def _mark_stale_unread(session: Session, tenant_id: UUID, cutoff: datetime,
                       now: datetime) -> int:
    rows = session.execute(
        select(Cluster.id, ReadState)
        .join(Item, Item.id == Cluster.rep_item_id)
        .outerjoin(ReadState, and_(ReadState.cluster_id == Cluster.id,
                                   ReadState.tenant_id == tenant_id))
        .where(
            Cluster.tenant_id == tenant_id,
            Item.published_at < cutoff,
            ReadState.read_at.is_(None),
            ReadState.not_interested_at.is_(None),
        )
    ).all()

    for cluster_id, state in rows:
        if state is None:
            session.add(ReadState(tenant_id=tenant_id, cluster_id=cluster_id, read_at=now))
        else:
            state.read_at = now
    session.flush()
    return len(rows)


def _purge_read_clusters(session: Session, tenant_id: UUID, cutoff: datetime) -> int:
    cluster_ids = list(session.execute(
        select(ReadState.cluster_id).where(
            ReadState.tenant_id == tenant_id,
            ReadState.read_at.is_not(None),
            ReadState.read_at < cutoff,
            ReadState.saved_at.is_(None),
        )
    ).scalars())
    if not cluster_ids:
        return 0

    for model, column in (
        (ClusterMember, ClusterMember.cluster_id),
        (ReadState, ReadState.cluster_id),
        (Cluster, Cluster.id),
    ):
        session.execute(
            delete(model)
            .where(model.tenant_id == tenant_id, column.in_(cluster_ids))
            .execution_options(synchronize_session=False)
        )
    session.expire_all()
    return len(cluster_ids)


def _purge_orphan_items(session: Session, tenant_id: UUID, cutoff: datetime) -> int:
    member = exists().where(ClusterMember.tenant_id == tenant_id, ClusterMember.item_id == Item.id)
    representative = exists().where(Cluster.tenant_id == tenant_id, Cluster.rep_item_id == Item.id)

    item_ids = list(session.execute(
        select(Item.id).where(
            Item.tenant_id == tenant_id,
            Item.published_at < cutoff,
            ~member,
            ~representative,
        )
    ).scalars())
    if not item_ids:
        return 0

    session.execute(
        delete(Item)
        .where(Item.tenant_id == tenant_id, Item.id.in_(item_ids))
        .execution_options(synchronize_session=False)
    )
    session.expire_all()
    return len(item_ids)
