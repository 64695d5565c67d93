"""
Progressive Summarization Job

Items that have aged out of the "fresh" window (older than
progressive_fresh_hours, younger than progressive_aging_days) and still have
no summary get a short AI-written one, stored in items.ai_summary.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from wrangler.database import SessionLocal
from wrangler.models import Item, utcnow
from wrangler.services.ai_provider import CompletionRequest
from wrangler.services.ai_usage import is_budget_exceeded, log_ai_usage
from wrangler.services.settings import get_pipeline_settings

logger = logging.getLogger(__name__)

BATCH_SIZE = 20
MAX_TOKENS = 150
TEMPERATURE = 0.3

SYSTEM_PROMPT = (
    "You are a concise news summarizer. Given an article title, write a 1-2 "
    "sentence summary that captures the key point. Be factual and neutral. "
    "Return only the summary text, no labels or prefixes."
)


def run_progressive_summary(tenant_id: UUID, completion_service=None,
                            session: Optional[Session] = None,
                            now: Optional[datetime] = None) -> dict:
    """
    Summarize up to BATCH_SIZE aging items for one tenant.

    Args:
        tenant_id: Tenant to process
        completion_service: Object with complete(CompletionRequest); None skips the job
        session: Optional database session
        now: Reference time

    Returns:
        Stats dict: candidates, summarized, skipped_reason
    """
    close_session = session is None
    if session is None:
        session = SessionLocal()

    stats = {'candidates': 0, 'summarized': 0, 'skipped_reason': None}
    now = now or utcnow()

    try:
        settings = get_pipeline_settings(session, tenant_id)

        if not settings.progressive_summarization_enabled:
            stats['skipped_reason'] = 'disabled'
            return stats
        if settings.ai_mode == 'off':
            stats['skipped_reason'] = 'ai_off'
            return stats
        if completion_service is None:
            stats['skipped_reason'] = 'no_provider'
            return stats

        if _over_budget(session, tenant_id, settings, now):
            logger.info(f"AI budget exceeded for tenant {tenant_id}, skipping summaries")
            stats['skipped_reason'] = 'over_budget'
            return stats

        fresh_cutoff = now - timedelta(hours=settings.progressive_fresh_hours)
        aging_cutoff = now - timedelta(days=settings.progressive_aging_days)

        candidates = list(session.execute(
            select(Item)
            .where(
                Item.tenant_id == tenant_id,
                Item.published_at < fresh_cutoff,
                Item.published_at >= aging_cutoff,
                Item.summary.is_(None),
                Item.ai_summary.is_(None),
            )
            .order_by(Item.published_at.desc())
            .limit(BATCH_SIZE)
        ).scalars())

        stats['candidates'] = len(candidates)
        if not candidates:
            return stats

        logger.info(json.dumps({
            'event': 'progressive_summary_start',
            'tenant_id': str(tenant_id),
            'candidates': len(candidates),
        }))

        for item in candidates:
            if _over_budget(session, tenant_id, settings, now):
                logger.info(f"AI budget reached for tenant {tenant_id} after {stats['summarized']} summaries")
                stats['skipped_reason'] = 'over_budget'
                break

            try:
                result = completion_service.complete(CompletionRequest(
                    messages=[
                        {'role': 'system', 'content': SYSTEM_PROMPT},
                        {'role': 'user', 'content': f"Title: {item.title}"},
                    ],
                    max_tokens=MAX_TOKENS,
                    temperature=TEMPERATURE,
                ))
            except Exception as e:
                logger.warning(f"Summary generation failed for item {item.id}: {e}")
                continue

            if result.produced_output:
                item.ai_summary = result.text.strip()
                stats['summarized'] += 1

            try:
                with session.begin_nested():
                    log_ai_usage(session, tenant_id, result, 'summary', now=now)
            except Exception as e:
                logger.warning(f"Failed to log AI usage for item {item.id}: {e}")

        session.flush()
        if close_session:
            session.commit()

        logger.info(json.dumps({
            'event': 'progressive_summary_complete',
            'tenant_id': str(tenant_id),
            **stats,
        }))
        return stats

    except Exception:
        if close_session:
            session.rollback()
        raise
    finally:
        if close_session:
            session.close()


def _over_budget(session: Session, tenant_id: UUID, settings, now: datetime) -> bool:
    """Budget check that fails open."""
    try:
        with session.begin_nested():
            return is_budget_exceeded(session, tenant_id, settings=settings, now=now)
    except Exception as e:
        logger.warning(f"Budget check failed for tenant {tenant_id}, proceeding: {e}")
        return False
