"""
Feed Pipeline Orchestrator

Runs Fetch -> Parse -> Upsert -> Features -> Cluster for one feed, then a
trigger-gated digest check. The polling cycle fans due feeds out to a
thread pool; each feed gets its own session, and one feed's failure never
aborts the others.
"""

import json
import logging
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from wrangler.database import SessionLocal, engine
from wrangler.models import Feed, Item, utcnow
from wrangler.services.clustering import assign_clusters, tenant_lock
from wrangler.services.digest import maybe_generate_digest
from wrangler.services.features import compute_item_features
from wrangler.services.feed_fetcher import (
    FeedBlockedError, FeedFetchError, RESOLVE_DNS, poll_feed,
)
from wrangler.services.feed_parser import FeedParseError, ItemParseFailure
from wrangler.services.feed_service import (
    fetch_due_feeds, list_tenant_ids, record_feed_blocked, record_feed_failure,
    record_feed_success, record_parse_failure, update_last_polled,
)
from wrangler.services.item_upsert import UpsertFailure, upsert_items

logger = logging.getLogger(__name__)


def _log_progress(msg: str):
    """Log pipeline progress with immediate flush."""
    full_msg = f"PIPELINE: {msg}"
    logger.info(full_msg)
    print(full_msg, file=sys.stdout, flush=True)


# Configuration
MAX_WORKERS = int(os.environ.get("POLL_WORKER_MAX_WORKERS", "8"))
DUE_FEED_BATCH_SIZE = int(os.environ.get("POLL_WORKER_BATCH_SIZE", "100"))

STATUS_OK = "ok"
STATUS_NOT_MODIFIED = "not_modified"
STATUS_FETCH_FAILED = "fetch_failed"
STATUS_BLOCKED = "blocked"
STATUS_PARSE_FAILED = "parse_failed"
STATUS_NOT_FOUND = "not_found"
STATUS_ERROR = "error"


@dataclass
class FeedRunResult:
    """Outcome of one feed's pipeline run."""
    tenant_id: UUID
    feed_id: UUID
    status: str
    items_parsed: int = 0
    items_upserted: int = 0
    items_new: int = 0
    clusters_created: int = 0
    clusters_joined: int = 0
    parse_failures: list[ItemParseFailure] = field(default_factory=list)
    upsert_failures: list[UpsertFailure] = field(default_factory=list)
    error: Optional[str] = None
    digest_id: Optional[UUID] = None


@dataclass
class PollCycleResult:
    tenants: int = 0
    feeds_due: int = 0
    succeeded: int = 0
    not_modified: int = 0
    failed: int = 0
    items_new: int = 0
    duration_seconds: float = 0.0
    results: list[FeedRunResult] = field(default_factory=list)


def run_feed_pipeline(tenant_id: UUID, feed_id: UUID, session: Optional[Session] = None,
                      client: Optional[httpx.Client] = None, now: Optional[datetime] = None,
                      resolve: bool = RESOLVE_DNS, check_digest: bool = True) -> FeedRunResult:
    """
    Run the full ingestion pipeline for one feed.

    Fetch, parse and storage problems are recorded on the feed and returned
    as a status; they are not raised.

    Args:
        tenant_id: Owning tenant
        feed_id: Feed to poll
        session: Optional database session (committed here either way)
        client: Optional shared httpx client
        now: Poll time (the digest check uses the clock when omitted)
        resolve: Resolve hostnames for the SSRF check
        check_digest: Run the trigger-gated digest after new items land

    Returns:
        FeedRunResult
    """
    close_session = session is None
    if session is None:
        session = SessionLocal()

    polled_at = now or utcnow()
    result = FeedRunResult(tenant_id=tenant_id, feed_id=feed_id, status=STATUS_OK)

    try:
        feed = session.execute(
            select(Feed).where(Feed.tenant_id == tenant_id, Feed.id == feed_id)
        ).scalar_one_or_none()
        if feed is None:
            logger.warning(f"Feed {feed_id} not found for tenant {tenant_id}")
            result.status = STATUS_NOT_FOUND
            return result

        try:
            poll = poll_feed(feed, client=client, fetched_at=polled_at, resolve=resolve)
        except FeedBlockedError as e:
            record_feed_blocked(session, feed, str(e), now=polled_at)
            session.commit()
            result.status, result.error = STATUS_BLOCKED, str(e)
            return result
        except FeedFetchError as e:
            record_feed_failure(session, feed, str(e), now=polled_at)
            session.commit()
            result.status, result.error = STATUS_FETCH_FAILED, str(e)
            return result
        except FeedParseError as e:
            record_parse_failure(session, feed, str(e), now=polled_at)
            session.commit()
            result.status, result.error = STATUS_PARSE_FAILED, str(e)
            return result

        record_feed_success(session, feed)

        if poll.not_modified:
            update_last_polled(session, feed, poll.etag, poll.last_modified, now=polled_at)
            session.commit()
            result.status = STATUS_NOT_MODIFIED
            return result

        result.items_parsed = len(poll.items)
        result.parse_failures = poll.parse_failures

        upserted = upsert_items(session, tenant_id, feed.id, poll.items)
        result.items_upserted = len(upserted.succeeded)
        result.upsert_failures = upserted.failed

        new_ids = upserted.new_item_ids
        result.items_new = len(new_ids)
        if not feed.title and poll.feed_title:
            feed.title = poll.feed_title[:500]

        # Held through commit so the next feed for this tenant sees new clusters
        with tenant_lock(session, tenant_id):
            if new_ids:
                new_items = list(session.execute(
                    select(Item).where(Item.tenant_id == tenant_id, Item.id.in_(new_ids))
                ).scalars())
                compute_item_features(session, new_items)
                cluster_stats = assign_clusters(session, tenant_id, new_ids)
                result.clusters_created = cluster_stats['created']
                result.clusters_joined = cluster_stats['joined']

            update_last_polled(session, feed, poll.etag, poll.last_modified, now=polled_at)
            session.commit()

        logger.info(json.dumps({
            'event': 'feed_pipeline_complete',
            'tenant_id': str(tenant_id),
            'feed_id': str(feed_id),
            'format': poll.format,
            'parsed': result.items_parsed,
            'new': result.items_new,
            'parse_failures': len(result.parse_failures),
            'upsert_failures': len(result.upsert_failures),
        }))

        if check_digest and new_ids:
            try:
                digest = maybe_generate_digest(tenant_id, session=session, now=now)
                session.commit()
                if digest is not None:
                    result.digest_id = digest.id
            except Exception as e:
                session.rollback()
                logger.error(f"Digest check failed for tenant {tenant_id}: {e}")

        return result

    except Exception as e:
        session.rollback()
        logger.error(f"Pipeline failed for feed {feed_id}: {e}", exc_info=True)
        result.status, result.error = STATUS_ERROR, str(e)
        return result
    finally:
        if close_session:
            session.close()


def _run_feed_job(tenant_id: UUID, feed_id: UUID, client: Optional[httpx.Client],
                  resolve: bool) -> FeedRunResult:
    try:
        return run_feed_pipeline(tenant_id, feed_id, client=client, resolve=resolve)
    except Exception as e:
        logger.error(f"Feed job crashed for {feed_id}: {e}", exc_info=True)
        return FeedRunResult(tenant_id=tenant_id, feed_id=feed_id, status=STATUS_ERROR, error=str(e))


def collect_due_feeds(batch_size: int = DUE_FEED_BATCH_SIZE) -> tuple[int, list[tuple[UUID, UUID]]]:
    """(tenant count, [(tenant_id, feed_id), ...]) for every tenant's due feeds."""
    session = SessionLocal()
    try:
        tenant_ids = list_tenant_ids(session)
        jobs = []
        for tenant_id in tenant_ids:
            for feed in fetch_due_feeds(session, tenant_id, limit=batch_size):
                jobs.append((tenant_id, feed.id))
        return len(tenant_ids), jobs
    finally:
        session.close()


def run_polling_cycle(max_workers: int = MAX_WORKERS, batch_size: int = DUE_FEED_BATCH_SIZE,
                      client: Optional[httpx.Client] = None,
                      resolve: bool = RESOLVE_DNS) -> PollCycleResult:
    """
    Poll every due feed across all tenants once.

    Args:
        max_workers: Thread pool size (always 1 on SQLite)
        batch_size: Max due feeds per tenant
        client: Optional shared httpx client
        resolve: Resolve hostnames for the SSRF check

    Returns:
        PollCycleResult with per-feed results and totals
    """
    cycle_start = time.time()
    cycle = PollCycleResult()

    # SQLite sessions share one connection, so feeds must run one at a time
    if engine.dialect.name == "sqlite" and max_workers > 1:
        logger.info(f"SQLite database: polling with 1 worker instead of {max_workers}")
        max_workers = 1

    cycle.tenants, jobs = collect_due_feeds(batch_size)
    cycle.feeds_due = len(jobs)
    _log_progress(f"Polling cycle: {cycle.feeds_due} due feeds across {cycle.tenants} tenants")

    if jobs:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(_run_feed_job, tenant_id, feed_id, client, resolve)
                for tenant_id, feed_id in jobs
            ]
            for idx, future in enumerate(as_completed(futures), start=1):
                feed_result = future.result()
                cycle.results.append(feed_result)
                if feed_result.status == STATUS_OK:
                    cycle.succeeded += 1
                elif feed_result.status == STATUS_NOT_MODIFIED:
                    cycle.not_modified += 1
                else:
                    cycle.failed += 1
                cycle.items_new += feed_result.items_new
                if idx % 25 == 0:
                    _log_progress(f"[{idx}/{len(jobs)}] feeds processed")

    cycle.duration_seconds = round(time.time() - cycle_start, 2)
    _log_progress(
        f"Cycle complete in {cycle.duration_seconds}s: {cycle.succeeded} ok, "
        f"{cycle.not_modified} not modified, {cycle.failed} failed, {cycle.items_new} new items"
    )
    return cycle
