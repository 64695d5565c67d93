"""
Clustering Engine

Greedy, single-pass, append-only story clustering. A new item joins the
first recent cluster whose representative is within SIMHASH_MAX_DISTANCE
bits AND shares at least JACCARD_MIN_SIMILARITY of its tokens; otherwise it
starts a new single-member cluster.

Clusters are never merged automatically. merge_clusters() exists for
operators to fix a split story by hand.

Compare-and-assign is serialized per tenant (in-process lock plus a
PostgreSQL advisory transaction lock), so two near-identical items arriving
at once cannot both create a cluster.
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update, delete, func, text
from sqlalchemy.orm import Session

from wrangler.models import (
    Cluster, ClusterMember, Feed, FeedWeight, Item, ReadState, WEIGHT_RANK,
    to_signed64, to_unsigned64, utcnow,
)
from wrangler.services.features import (
    hamming_distance, item_text, jaccard_similarity, simhash, tokenize,
)

logger = logging.getLogger(__name__)

# Match thresholds
SIMHASH_MAX_DISTANCE = 10
JACCARD_MIN_SIMILARITY = 0.25

# Candidate window around the new item's published time
TIME_WINDOW_HOURS = 48
CANDIDATE_LIMIT = 500


class ClusterMergeError(ValueError):
    """Invalid manual merge request."""


# ============================================================================
# Per-tenant serialization
# ============================================================================

# Entries disappear once no thread holds a reference to the lock
_tenant_locks = weakref.WeakValueDictionary()
_tenant_locks_guard = threading.Lock()


def _get_tenant_lock(tenant_id: UUID) -> threading.RLock:
    with _tenant_locks_guard:
        lock = _tenant_locks.get(tenant_id)
        if lock is None:
            lock = _tenant_locks[tenant_id] = threading.RLock()
        return lock


@contextmanager
def tenant_lock(session: Session, tenant_id: UUID):
    """
    Serialize cluster assignment for one tenant.

    Callers in the same process should commit before leaving the block so
    the next assignment sees their clusters. On PostgreSQL an advisory lock
    is also taken; it is held until the caller's transaction ends, which
    covers other worker processes. Reentrant.
    """
    lock = _get_tenant_lock(tenant_id)
    with lock:
        if session.get_bind().dialect.name == "postgresql":
            session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:tenant))"),
                {"tenant": str(tenant_id)},
            )
        yield


# ============================================================================
# Matching rules
# ============================================================================

def is_same_story(distance: int, similarity: float) -> bool:
    """Both signals must agree."""
    return distance <= SIMHASH_MAX_DISTANCE and similarity >= JACCARD_MIN_SIMILARITY


def representative_key(item: Item, weight: Optional[FeedWeight]):
    """Sort key: earliest published wins; ties go to the higher-weight feed."""
    rank = WEIGHT_RANK.get(weight or FeedWeight.NEUTRAL, 0)
    return (item.published_at, -rank)


def _fingerprint(item: Item) -> int:
    if item.simhash is None:
        item.simhash = to_signed64(simhash(item_text(item.title, item.summary)))
    return to_unsigned64(item.simhash)


# ============================================================================
# Assignment
# ============================================================================

def assign_cluster(session: Session, tenant_id: UUID, item: Item) -> UUID:
    """
    Place one item into a cluster, creating one if nothing matches.

    Returns:
        Cluster id (the existing one if the item is already clustered)
    """
    with tenant_lock(session, tenant_id):
        return _assign_locked(session, tenant_id, item)


def assign_clusters(session: Session, tenant_id: UUID, item_ids: Iterable[UUID]) -> dict:
    """
    Cluster newly inserted items, oldest first.

    Args:
        session: Database session (caller commits)
        tenant_id: Owning tenant
        item_ids: Ids of newly inserted items

    Returns:
        Stats dict: joined, created, already_clustered
    """
    stats = {'joined': 0, 'created': 0, 'already_clustered': 0}
    item_ids = list(item_ids)
    if not item_ids:
        return stats

    items = list(session.execute(
        select(Item)
        .where(Item.tenant_id == tenant_id, Item.id.in_(item_ids))
        .order_by(Item.published_at, Item.created_at)
    ).scalars())

    with tenant_lock(session, tenant_id):
        clustered = set(session.execute(
            select(ClusterMember.item_id).where(
                ClusterMember.tenant_id == tenant_id,
                ClusterMember.item_id.in_(item_ids),
            )
        ).scalars())

        for item in items:
            if item.id in clustered:
                stats['already_clustered'] += 1
                continue
            _, created = _assign_item(session, tenant_id, item)
            stats['created' if created else 'joined'] += 1

    logger.info(
        f"Clustered {len(items)} items for tenant {tenant_id}: "
        f"{stats['joined']} joined, {stats['created']} new clusters"
    )
    return stats


def _assign_locked(session: Session, tenant_id: UUID, item: Item) -> UUID:
    existing = session.execute(
        select(ClusterMember.cluster_id).where(
            ClusterMember.tenant_id == tenant_id,
            ClusterMember.item_id == item.id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing
    cluster_id, _ = _assign_item(session, tenant_id, item)
    return cluster_id


def _assign_item(session: Session, tenant_id: UUID, item: Item) -> tuple[UUID, bool]:
    match = find_matching_cluster(session, tenant_id, item)
    now = utcnow()

    if match is None:
        cluster = Cluster(tenant_id=tenant_id, rep_item_id=item.id, size=1,
                          created_at=now, updated_at=now)
        session.add(cluster)
        session.flush()
        session.add(ClusterMember(cluster_id=cluster.id, item_id=item.id,
                                  tenant_id=tenant_id, added_at=now))
        session.flush()
        logger.debug(f"Item {item.id} started cluster {cluster.id}")
        return cluster.id, True

    cluster, rep = match
    session.add(ClusterMember(cluster_id=cluster.id, item_id=item.id,
                              tenant_id=tenant_id, added_at=now))
    cluster.size = (cluster.size or 0) + 1
    cluster.updated_at = now

    if representative_key(item, _feed_weight(session, item)) < representative_key(rep, _feed_weight(session, rep)):
        cluster.rep_item_id = item.id

    session.flush()
    logger.debug(f"Item {item.id} joined cluster {cluster.id} (size {cluster.size})")
    return cluster.id, False


def find_matching_cluster(session: Session, tenant_id: UUID,
                          item: Item) -> Optional[tuple[Cluster, Item]]:
    """
    First recent cluster whose representative matches the item.

    Candidates are clusters whose representative was published within
    TIME_WINDOW_HOURS of the item, most recent first.
    """
    fingerprint = _fingerprint(item)
    tokens = tokenize(item_text(item.title, item.summary))
    window = timedelta(hours=TIME_WINDOW_HOURS)

    candidates = session.execute(
        select(Cluster, Item)
        .join(Item, Item.id == Cluster.rep_item_id)
        .where(
            Cluster.tenant_id == tenant_id,
            Item.tenant_id == tenant_id,
            Item.id != item.id,
            Item.published_at >= item.published_at - window,
            Item.published_at <= item.published_at + window,
        )
        .order_by(Item.published_at.desc())
        .limit(CANDIDATE_LIMIT)
    ).all()

    for cluster, rep in candidates:
        distance = hamming_distance(fingerprint, _fingerprint(rep))
        if distance > SIMHASH_MAX_DISTANCE:
            continue
        similarity = jaccard_similarity(tokens, tokenize(item_text(rep.title, rep.summary)))
        if is_same_story(distance, similarity):
            return cluster, rep
    return None


def _feed_weight(session: Session, item: Item) -> FeedWeight:
    weight = session.execute(
        select(Feed.weight).where(Feed.id == item.feed_id)
    ).scalar_one_or_none()
    return weight or FeedWeight.NEUTRAL


# ============================================================================
# Manual merge
# ============================================================================

def merge_clusters(session: Session, tenant_id: UUID, target_id: UUID,
                   source_id: UUID, now: Optional[datetime] = None) -> Cluster:
    """
    Fold source into target. Operator-only; the pipeline never calls this.

    - All source members move to target and size is recounted
    - Representative is recomputed over the combined membership
    - Target keeps its read/not-interested state; a save on either side
      stays saved
    - Source cluster (and its read state) is deleted

    Raises:
        ClusterMergeError: same cluster on both sides
        LookupError: either cluster is missing for this tenant
    """
    if target_id == source_id:
        raise ClusterMergeError("Cannot merge a cluster into itself")

    now = now or utcnow()
    with tenant_lock(session, tenant_id):
        target = _get_cluster(session, tenant_id, target_id)
        source = _get_cluster(session, tenant_id, source_id)

        source_state = _get_read_state(session, tenant_id, source.id)
        if source_state is not None and source_state.saved_at is not None:
            target_state = _get_read_state(session, tenant_id, target.id)
            if target_state is None:
                target_state = ReadState(tenant_id=tenant_id, cluster_id=target.id)
                session.add(target_state)
            if target_state.saved_at is None:
                target_state.saved_at = source_state.saved_at
        session.flush()

        session.execute(
            update(ClusterMember)
            .where(ClusterMember.tenant_id == tenant_id, ClusterMember.cluster_id == source.id)
            .values(cluster_id=target.id)
            .execution_options(synchronize_session=False)
        )
        session.execute(
            delete(ReadState)
            .where(ReadState.tenant_id == tenant_id, ReadState.cluster_id == source.id)
            .execution_options(synchronize_session=False)
        )
        session.execute(
            delete(Cluster)
            .where(Cluster.tenant_id == tenant_id, Cluster.id == source.id)
            .execution_options(synchronize_session=False)
        )
        session.expunge(source)
        if source_state is not None:
            session.expunge(source_state)
        session.expire(target)

        members = session.execute(
            select(Item, Feed.weight)
            .join(ClusterMember, ClusterMember.item_id == Item.id)
            .join(Feed, Feed.id == Item.feed_id)
            .where(ClusterMember.tenant_id == tenant_id, ClusterMember.cluster_id == target.id)
        ).all()

        rep, _ = min(members, key=lambda row: representative_key(row[0], row[1]))
        target.rep_item_id = rep.id
        target.size = len(members)
        target.updated_at = now
        session.flush()

    logger.info(
        f"Merged cluster {source_id} into {target_id} for tenant {tenant_id} "
        f"(size {target.size})"
    )
    return target


def _get_cluster(session: Session, tenant_id: UUID, cluster_id: UUID) -> Cluster:
    cluster = session.execute(
        select(Cluster).where(Cluster.tenant_id == tenant_id, Cluster.id == cluster_id)
    ).scalar_one_or_none()
    if cluster is None:
        raise LookupError(f"Cluster {cluster_id} not found")
    return cluster


def _get_read_state(session: Session, tenant_id: UUID, cluster_id: UUID) -> Optional[ReadState]:
    return session.execute(
        select(ReadState).where(ReadState.tenant_id == tenant_id, ReadState.cluster_id == cluster_id)
    ).scalar_one_or_none()


def count_members(session: Session, tenant_id: UUID, cluster_id: UUID) -> int:
    return session.execute(
        select(func.count()).select_from(ClusterMember).where(
            ClusterMember.tenant_id == tenant_id, ClusterMember.cluster_id == cluster_id
        )
    ).scalar_one()
