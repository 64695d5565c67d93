"""
Integration tests for progressive summarization and the AI budget governor.
"""

from datetime import timedelta
from unittest.mock import MagicMock

from sqlalchemy import select

from wrangler.models import AiUsage, AppSetting
from wrangler.services.ai_provider import CompletionResult
from wrangler.services.ai_usage import get_monthly_usage, is_budget_exceeded
from wrangler.services.progressive_summary import run_progressive_summary
from tests.fixtures.sample_data import create_item


def _completion(text="Council approved a riverside park."):
    return CompletionResult(text=text, input_tokens=50, output_tokens=10,
                            model="claude-haiku-4-5", provider="anthropic", duration_ms=120)


def _service(text="Council approved a riverside park."):
    service = MagicMock()
    service.complete.return_value = _completion(text)
    return service


def _enable_ai(session, tenant, **extra):
    session.add(AppSetting(tenant_id=tenant.id, key="main",
                           data={"ai_mode": "summaries_digest", **extra}))
    session.flush()


def _item(session, tenant, feed, now, age, summary=None):
    item = create_item(tenant.id, feed.id, title=f"Story aged {age}", summary=summary,
                       published_at=now - age)
    session.add(item)
    session.flush()
    return item


class TestRunProgressiveSummary:

    def test_summarizes_only_aging_unsummarized_items(self, db_session, tenant, feed, now):
        _enable_ai(db_session, tenant)
        aging = _item(db_session, tenant, feed, now, timedelta(hours=12))
        fresh = _item(db_session, tenant, feed, now, timedelta(hours=1))
        stale = _item(db_session, tenant, feed, now, timedelta(days=5))
        has_summary = _item(db_session, tenant, feed, now, timedelta(hours=12), summary="Feed text")
        db_session.commit()
        service = _service()

        stats = run_progressive_summary(tenant.id, completion_service=service,
                                        session=db_session, now=now)
        db_session.commit()

        assert stats == {'candidates': 1, 'summarized': 1, 'skipped_reason': None}
        assert aging.ai_summary == "Council approved a riverside park."
        assert fresh.ai_summary is None
        assert stale.ai_summary is None
        assert has_summary.ai_summary is None

        request = service.complete.call_args.args[0]
        assert request.messages[0]['role'] == 'system'
        assert "Story aged" in request.messages[1]['content']

    def test_usage_logged(self, db_session, tenant, feed, now):
        _enable_ai(db_session, tenant)
        _item(db_session, tenant, feed, now, timedelta(hours=12))
        db_session.commit()

        run_progressive_summary(tenant.id, completion_service=_service(),
                                session=db_session, now=now)

        usage = db_session.execute(select(AiUsage)).scalar_one()
        assert usage.feature == "summary"
        assert usage.input_tokens == 50
        assert usage.estimated_cost_usd > 0

    def test_error_marker_not_stored(self, db_session, tenant, feed, now):
        _enable_ai(db_session, tenant)
        item = _item(db_session, tenant, feed, now, timedelta(hours=12))
        db_session.commit()

        stats = run_progressive_summary(tenant.id, completion_service=_service("[error] overloaded"),
                                        session=db_session, now=now)

        assert stats['summarized'] == 0
        assert item.ai_summary is None

    def test_provider_exception_skips_item(self, db_session, tenant, feed, now):
        _enable_ai(db_session, tenant)
        _item(db_session, tenant, feed, now, timedelta(hours=12))
        db_session.commit()
        service = MagicMock()
        service.complete.side_effect = RuntimeError("connection reset")

        stats = run_progressive_summary(tenant.id, completion_service=service,
                                        session=db_session, now=now)

        assert stats['candidates'] == 1
        assert stats['summarized'] == 0

    def test_ai_off_by_default(self, db_session, tenant, feed, now):
        _item(db_session, tenant, feed, now, timedelta(hours=12))
        db_session.commit()
        service = _service()

        stats = run_progressive_summary(tenant.id, completion_service=service,
                                        session=db_session, now=now)

        assert stats['skipped_reason'] == 'ai_off'
        service.complete.assert_not_called()

    def test_disabled(self, db_session, tenant, now):
        _enable_ai(db_session, tenant, progressive_summarization_enabled=False)
        db_session.commit()

        stats = run_progressive_summary(tenant.id, completion_service=_service(),
                                        session=db_session, now=now)

        assert stats['skipped_reason'] == 'disabled'

    def test_no_provider(self, db_session, tenant, now):
        _enable_ai(db_session, tenant)
        db_session.commit()

        stats = run_progressive_summary(tenant.id, session=db_session, now=now)

        assert stats['skipped_reason'] == 'no_provider'

    def test_over_budget(self, db_session, tenant, feed, now):
        _enable_ai(db_session, tenant, monthly_ai_token_limit=1000)
        db_session.add(AiUsage(tenant_id=tenant.id, provider="anthropic", model="claude-haiku-4-5",
                               input_tokens=900, output_tokens=200, estimated_cost_usd=0.01,
                               feature="summary", created_at=now - timedelta(days=1)))
        _item(db_session, tenant, feed, now, timedelta(hours=12))
        db_session.commit()
        service = _service()

        stats = run_progressive_summary(tenant.id, completion_service=service,
                                        session=db_session, now=now)

        assert stats['skipped_reason'] == 'over_budget'
        service.complete.assert_not_called()


    def test_budget_rechecked_before_each_call(self, db_session, tenant, feed, now):
        """Each call costs 60 tokens; a 100 token allowance stops the third."""
        _enable_ai(db_session, tenant, monthly_ai_token_limit=100)
        for hours in (10, 12, 14):
            _item(db_session, tenant, feed, now, timedelta(hours=hours))
        db_session.commit()
        service = _service()

        stats = run_progressive_summary(tenant.id, completion_service=service,
                                        session=db_session, now=now)

        assert stats['candidates'] == 3
        assert stats['summarized'] == 2
        assert stats['skipped_reason'] == 'over_budget'
        assert service.complete.call_count == 2


class TestBudgetGovernor:

    def _usage(self, session, tenant, created_at, tokens=100, cost=0.5):
        session.add(AiUsage(tenant_id=tenant.id, provider="anthropic", model="claude-sonnet",
                            input_tokens=tokens, output_tokens=0, estimated_cost_usd=cost,
                            feature="digest", created_at=created_at))
        session.flush()

    def test_only_current_month_counts(self, db_session, tenant, now):
        self._usage(db_session, tenant, now - timedelta(days=40), tokens=5000)
        self._usage(db_session, tenant, now - timedelta(days=1), tokens=100)

        tokens, cost = get_monthly_usage(db_session, tenant.id, now)

        assert tokens == 100
        assert cost == 0.5

    def test_usd_cap(self, db_session, tenant, now):
        db_session.add(AppSetting(tenant_id=tenant.id, key="main", data={"monthly_ai_cap_usd": 1.0}))
        self._usage(db_session, tenant, now - timedelta(hours=1), cost=0.6)
        assert not is_budget_exceeded(db_session, tenant.id, now=now)

        self._usage(db_session, tenant, now - timedelta(hours=1), cost=0.6)
        assert is_budget_exceeded(db_session, tenant.id, now=now)

    def test_zero_cap_means_no_cap(self, db_session, tenant, now):
        db_session.add(AppSetting(tenant_id=tenant.id, key="main", data={"monthly_ai_cap_usd": 0}))
        self._usage(db_session, tenant, now - timedelta(hours=1), cost=99.0)

        assert not is_budget_exceeded(db_session, tenant.id, now=now)
