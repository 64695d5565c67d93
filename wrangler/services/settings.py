"""
Per-tenant pipeline settings

Read from the app_settings key-value store (key "main"). Missing keys use
defaults; malformed values fall back to defaults with a warning.
"""

import logging
from dataclasses import dataclass, fields
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from wrangler.models import AppSetting

logger = logging.getLogger(__name__)

SETTINGS_KEY = "main"

AI_MODES = ("off", "summaries_digest", "full")


@dataclass
class PipelineSettings:
    ai_mode: str = "off"
    progressive_summarization_enabled: bool = True
    progressive_fresh_hours: int = 6
    progressive_aging_days: int = 3
    digest_backlog_threshold: int = 50
    digest_away_hours: int = 24
    unread_max_age_days: Optional[int] = None
    read_purge_days: Optional[int] = None
    monthly_ai_token_limit: int = 100000
    monthly_ai_cap_usd: Optional[float] = None


# camelCase keys written by the web UI
_ALIASES = {
    "aiMode": "ai_mode",
    "progressiveSummarizationEnabled": "progressive_summarization_enabled",
    "progressiveFreshHours": "progressive_fresh_hours",
    "progressiveAgingDays": "progressive_aging_days",
    "digestBacklogThreshold": "digest_backlog_threshold",
    "digestAwayHours": "digest_away_hours",
    "unreadMaxAgeDays": "unread_max_age_days",
    "readPurgeDays": "read_purge_days",
    "monthlyAiTokenLimit": "monthly_ai_token_limit",
    "monthlyAiCapUsd": "monthly_ai_cap_usd",
}


def get_pipeline_settings(session: Session, tenant_id: UUID) -> PipelineSettings:
    """Load a tenant's pipeline settings, applying defaults."""
    data = session.execute(
        select(AppSetting.data).where(
            AppSetting.tenant_id == tenant_id,
            AppSetting.key == SETTINGS_KEY,
        )
    ).scalar_one_or_none()
    return settings_from_dict(data or {})


def settings_from_dict(data: dict) -> PipelineSettings:
    settings = PipelineSettings()
    if not isinstance(data, dict):
        logger.warning(f"Ignoring malformed settings payload of type {type(data).__name__}")
        return settings

    normalized = {_ALIASES.get(key, key): value for key, value in data.items()}
    for f in fields(PipelineSettings):
        if f.name not in normalized:
            continue
        default = getattr(settings, f.name)
        try:
            value = _coerce(f.name, normalized[f.name], default)
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid setting {f.name}={normalized[f.name]!r}, using default: {e}")
            continue
        setattr(settings, f.name, value)
    return settings


def _coerce(name: str, value, default):
    if name == "ai_mode":
        if value not in AI_MODES:
            raise ValueError(f"expected one of {AI_MODES}")
        return value

    if name == "progressive_summarization_enabled":
        if not isinstance(value, bool):
            raise TypeError("expected a boolean")
        return value

    if value is None:
        if default is None:
            return None
        raise TypeError("value is required")

    if isinstance(value, bool):
        raise TypeError("expected a number")

    number = float(value) if name == "monthly_ai_cap_usd" else int(value)
    if number < 0:
        raise ValueError("must not be negative")
    return number
