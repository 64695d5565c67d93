"""
AI usage accounting and budget governor

Every completion is logged to ai_usage with an estimated USD cost. The
governor compares the current calendar month's totals to the tenant's token
limit and optional USD cap.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from wrangler.models import AiUsage, utcnow
from wrangler.services.ai_provider import CompletionResult
from wrangler.services.settings import PipelineSettings, get_pipeline_settings

logger = logging.getLogger(__name__)

# USD per 1M tokens: (input, output)
MODEL_COST_TABLE = {
    "claude-sonnet-4-5": (3.0, 15.0),
    "claude-sonnet": (3.0, 15.0),
    "claude-haiku-4-5": (1.0, 5.0),
    "claude-haiku": (0.8, 4.0),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4o": (2.5, 10.0),
}
DEFAULT_MODEL_COST = MODEL_COST_TABLE["claude-sonnet"]

FREE_PROVIDERS = {"ollama", "local"}


def estimate_cost_usd(model: str, input_tokens: int, output_tokens: int,
                      provider: Optional[str] = None) -> float:
    """Estimated cost of one completion; unknown cloud models use Sonnet pricing."""
    if provider in FREE_PROVIDERS or model.startswith(("ollama/", "local/")):
        return 0.0
    input_cost, output_cost = MODEL_COST_TABLE.get(model, DEFAULT_MODEL_COST)
    return (input_tokens * input_cost + output_tokens * output_cost) / 1_000_000


def log_ai_usage(session: Session, tenant_id: UUID, result: CompletionResult,
                 feature: str, now: Optional[datetime] = None) -> AiUsage:
    usage = AiUsage(
        tenant_id=tenant_id,
        provider=result.provider,
        model=result.model,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        estimated_cost_usd=estimate_cost_usd(
            result.model, result.input_tokens, result.output_tokens, result.provider
        ),
        feature=feature,
        duration_ms=result.duration_ms,
        created_at=now or utcnow(),
    )
    session.add(usage)
    session.flush()
    return usage


def month_start(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def get_monthly_usage(session: Session, tenant_id: UUID,
                      now: Optional[datetime] = None) -> tuple[int, float]:
    """(total tokens, total estimated USD) since the start of the month."""
    row = session.execute(
        select(
            func.coalesce(func.sum(AiUsage.input_tokens + AiUsage.output_tokens), 0),
            func.coalesce(func.sum(AiUsage.estimated_cost_usd), 0.0),
        ).where(
            AiUsage.tenant_id == tenant_id,
            AiUsage.created_at >= month_start(now),
        )
    ).one()
    return int(row[0]), float(row[1])


def is_budget_exceeded(session: Session, tenant_id: UUID,
                       settings: Optional[PipelineSettings] = None,
                       now: Optional[datetime] = None) -> bool:
    """
    True when the tenant has used its monthly token allowance or USD cap.

    Callers treat an exception from this check as "not exceeded" (fail-open).
    """
    settings = settings or get_pipeline_settings(session, tenant_id)
    total_tokens, total_cost = get_monthly_usage(session, tenant_id, now)

    if total_tokens >= settings.monthly_ai_token_limit:
        logger.info(
            f"Tenant {tenant_id} over token budget: "
            f"{total_tokens}/{settings.monthly_ai_token_limit}"
        )
        return True

    cap = settings.monthly_ai_cap_usd
    if cap and cap > 0 and total_cost >= cap:
        logger.info(f"Tenant {tenant_id} over USD cap: ${total_cost:.4f}/${cap:.2f}")
        return True

    return False
