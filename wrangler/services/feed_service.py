"""
Feed Service

Due-feed selection and circuit-breaker bookkeeping for the polling cycle.

Cooldown after consecutive failures:
    <3 -> none, 3 -> 1h, 4 -> 4h, 5 -> 12h, >=6 -> 24h
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select, or_
from sqlalchemy.orm import Session

from wrangler.models import Feed, Tenant, utcnow

logger = logging.getLogger(__name__)

MAX_COOLDOWN_HOURS = 24

# failures -> cooldown hours (anything above the last key uses the cap)
COOLDOWN_STEPS = {3: 1, 4: 4, 5: 12}

MAX_FAILURE_REASON_LENGTH = 1000


def get_circuit_cooldown_hours(failures: int) -> int:
    """Cooldown in hours for a given consecutive failure count."""
    if failures < 3:
        return 0
    return COOLDOWN_STEPS.get(failures, MAX_COOLDOWN_HOURS)


def list_tenant_ids(session: Session) -> list[UUID]:
    return list(session.execute(select(Tenant.id).order_by(Tenant.created_at)).scalars())


def fetch_due_feeds(session: Session, tenant_id: UUID, limit: int = 100,
                    now: Optional[datetime] = None) -> list[Feed]:
    """
    Feeds ready to poll for one tenant.

    Muted, blocked and cooling-down feeds are excluded. Never-polled
    feeds come first, then the least recently polled.
    """
    now = now or utcnow()
    stmt = (
        select(Feed)
        .where(
            Feed.tenant_id == tenant_id,
            Feed.muted.is_(False),
            Feed.blocked.is_(False),
            or_(Feed.circuit_open_until.is_(None), Feed.circuit_open_until <= now),
        )
        .order_by(Feed.last_polled_at.asc().nulls_first(), Feed.created_at)
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def record_feed_success(session: Session, feed: Feed) -> None:
    """Close the circuit after a successful fetch."""
    if feed.consecutive_failures:
        logger.info(f"Feed {feed.url} recovered after {feed.consecutive_failures} failures")
    feed.consecutive_failures = 0
    feed.circuit_open_until = None
    feed.last_failure_reason = None
    session.flush()


def record_feed_failure(session: Session, feed: Feed, reason: str,
                        now: Optional[datetime] = None) -> int:
    """
    Count a fetch failure and open the circuit if the threshold is reached.

    Returns:
        Cooldown hours applied (0 when the circuit stays closed)
    """
    now = now or utcnow()
    feed.consecutive_failures = (feed.consecutive_failures or 0) + 1
    feed.last_failure_reason = _clip(reason)
    feed.last_polled_at = now

    cooldown = get_circuit_cooldown_hours(feed.consecutive_failures)
    feed.circuit_open_until = now + timedelta(hours=cooldown) if cooldown else None
    session.flush()

    if cooldown:
        logger.warning(
            f"Circuit open for {feed.url} for {cooldown}h after "
            f"{feed.consecutive_failures} consecutive failures: {reason}"
        )
    else:
        logger.warning(f"Fetch failure {feed.consecutive_failures} for {feed.url}: {reason}")
    return cooldown


def record_feed_blocked(session: Session, feed: Feed, reason: str,
                        now: Optional[datetime] = None) -> None:
    """
    Record an SSRF/scheme rejection.

    The feed is flagged blocked and skipped by every later cycle until an
    operator resets it; circuit_open_until only records the nominal cooldown.
    """
    now = now or utcnow()
    feed.consecutive_failures = (feed.consecutive_failures or 0) + 1
    feed.last_failure_reason = _clip(f"blocked: {reason}")
    feed.last_polled_at = now
    feed.circuit_open_until = now + timedelta(hours=MAX_COOLDOWN_HOURS)
    feed.blocked = True
    session.flush()
    logger.error(f"Feed {feed.url} blocked by URL validation: {reason}")


def record_parse_failure(session: Session, feed: Feed, reason: str,
                         now: Optional[datetime] = None) -> None:
    """
    The fetch worked but the payload was unreadable.

    Does not feed the circuit breaker; the reason is kept for operators.
    """
    now = now or utcnow()
    feed.consecutive_failures = 0
    feed.circuit_open_until = None
    feed.last_failure_reason = _clip(f"parse: {reason}")
    feed.last_polled_at = now
    session.flush()
    logger.warning(f"Feed {feed.url} returned an unparsable payload: {reason}")


def update_last_polled(session: Session, feed: Feed, etag: Optional[str],
                       last_modified: Optional[str], now: Optional[datetime] = None) -> None:
    """Advance the polling cursor."""
    feed.etag = etag
    feed.last_modified = last_modified
    feed.last_polled_at = now or utcnow()
    session.flush()


def reset_circuit(session: Session, feed: Feed) -> None:
    """Operator action: make a blocked or cooling-down feed eligible again."""
    feed.consecutive_failures = 0
    feed.circuit_open_until = None
    feed.blocked = False
    session.flush()
    logger.info(f"Circuit reset for feed {feed.url}")


def _clip(reason: str) -> str:
    reason = reason or "unknown error"
    return reason[:MAX_FAILURE_REASON_LENGTH]
