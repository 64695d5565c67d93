"""
Integration tests for digest generation and the digest trigger policy.
"""

from datetime import timedelta

from sqlalchemy import func, select

from wrangler.models import AppSetting, Digest
from wrangler.services.digest import (
    SECTION_BIG_STORIES, SECTION_QUICK_SCAN, SECTION_TOP_PICKS,
    count_unread_clusters, generate_digest, maybe_generate_digest, should_generate_digest,
)
from tests.fixtures.sample_data import add_cluster, create_item


def _story(session, tenant, feed, title, now, size=1, summary=None, ai_summary=None,
           published_offset=timedelta(hours=2), **state):
    """One cluster of `size` items, updated an hour before now."""
    items = [
        create_item(tenant.id, feed.id, title=title if i == 0 else f"{title} ({i})",
                    summary=summary if i == 0 else None,
                    published_at=now - published_offset)
        for i in range(size)
    ]
    items[0].ai_summary = ai_summary
    session.add_all(items)
    session.flush()
    return add_cluster(session, tenant.id, items, updated_at=now - timedelta(hours=1), **state)


def _set_settings(session, tenant, **data):
    session.add(AppSetting(tenant_id=tenant.id, key="main", data=data))
    session.flush()


def _digest_count(session):
    return session.execute(select(func.count()).select_from(Digest)).scalar_one()


class TestGenerateDigest:

    def test_sections_split_five_five_rest(self, db_session, tenant, feed, now):
        for i in range(12):
            _story(db_session, tenant, feed, f"Story {i}", now)
        db_session.commit()

        digest = generate_digest(tenant.id, session=db_session, now=now)

        sections = [entry['section'] for entry in digest.entries]
        assert sections.count(SECTION_TOP_PICKS) == 5
        assert sections.count(SECTION_BIG_STORIES) == 5
        assert sections.count(SECTION_QUICK_SCAN) == 2
        assert "## Top Picks" in digest.body
        assert "## Big Stories" in digest.body
        assert "## Quick Scan" in digest.body

    def test_small_digest_has_only_top_picks(self, db_session, tenant, feed, now):
        for i in range(3):
            _story(db_session, tenant, feed, f"Story {i}", now)
        db_session.commit()

        digest = generate_digest(tenant.id, session=db_session, now=now)

        assert len(digest.entries) == 3
        assert "## Top Picks" in digest.body
        assert "## Big Stories" not in digest.body
        assert "## Quick Scan" not in digest.body

    def test_ranking_weight_then_size(self, db_session, tenant, feed, preferred_feed, now):
        _story(db_session, tenant, feed, "Small neutral", now)
        _story(db_session, tenant, preferred_feed, "Preferred", now)
        _story(db_session, tenant, feed, "Big neutral", now, size=3)
        db_session.commit()

        digest = generate_digest(tenant.id, session=db_session, now=now)

        assert [e['headline'] for e in digest.entries] == ["Preferred", "Big neutral", "Small neutral"]
        assert digest.entries[0]['weight'] == "prefer"
        assert digest.entries[1]['size'] == 3

    def test_newer_story_first_on_tie(self, db_session, tenant, feed, now):
        _story(db_session, tenant, feed, "Older", now, published_offset=timedelta(hours=5))
        _story(db_session, tenant, feed, "Newer", now, published_offset=timedelta(hours=1))
        db_session.commit()

        digest = generate_digest(tenant.id, session=db_session, now=now)

        assert [e['headline'] for e in digest.entries] == ["Newer", "Older"]

    def test_one_liners(self, db_session, tenant, feed, now):
        _story(db_session, tenant, feed, "With summary", now, summary="S" * 300)
        _story(db_session, tenant, feed, "AI only", now, ai_summary="Written by the model.")
        _story(db_session, tenant, feed, "Bare", now)
        db_session.commit()

        digest = generate_digest(tenant.id, session=db_session, now=now)
        by_headline = {e['headline']: e for e in digest.entries}

        assert len(by_headline["With summary"]['one_liner']) == 120
        assert by_headline["With summary"]['one_liner'].endswith("...")
        assert by_headline["AI only"]['one_liner'] == "Written by the model."
        assert by_headline["Bare"]['one_liner'] is None
        assert "- Bare\n" in digest.body
        assert "- AI only: Written by the model." in digest.body

    def test_read_and_dismissed_clusters_excluded(self, db_session, tenant, feed, now):
        _story(db_session, tenant, feed, "Unread", now)
        _story(db_session, tenant, feed, "Read", now, read_at=now - timedelta(minutes=5))
        _story(db_session, tenant, feed, "Dismissed", now, not_interested_at=now - timedelta(minutes=5))
        _story(db_session, tenant, feed, "Saved but unread", now, saved_at=now - timedelta(minutes=5))
        db_session.commit()

        digest = generate_digest(tenant.id, session=db_session, now=now)

        assert sorted(e['headline'] for e in digest.entries) == ["Saved but unread", "Unread"]

    def test_title_and_window(self, db_session, tenant, feed, now):
        _story(db_session, tenant, feed, "Story", now)
        db_session.commit()

        digest = generate_digest(tenant.id, session=db_session, now=now)

        assert digest.window_end == now
        assert digest.window_start == now - timedelta(hours=24)
        assert digest.title == "Digest for 2026-10-15 - 2026-10-16"

    def test_skipped_when_window_already_covered(self, db_session, tenant, feed, now):
        _story(db_session, tenant, feed, "Story", now)
        db_session.commit()
        generate_digest(tenant.id, session=db_session, now=now)
        db_session.commit()

        assert generate_digest(tenant.id, session=db_session, now=now) is None
        assert _digest_count(db_session) == 1

    def test_windows_are_contiguous(self, db_session, tenant, feed, now):
        _story(db_session, tenant, feed, "First", now)
        db_session.commit()
        first = generate_digest(tenant.id, session=db_session, now=now)
        db_session.commit()

        later = now + timedelta(hours=3)
        _story(db_session, tenant, feed, "Second", later)
        db_session.commit()
        second = generate_digest(tenant.id, session=db_session, now=later)

        assert second.window_start == first.window_end
        assert [e['headline'] for e in second.entries] == ["Second"]

    def test_no_unread_clusters_skips(self, db_session, tenant, feed, now):
        _story(db_session, tenant, feed, "Read", now, read_at=now)
        db_session.commit()

        assert generate_digest(tenant.id, session=db_session, now=now) is None
        assert _digest_count(db_session) == 0

    def test_duplicate_window_returns_none(self, db_session, tenant, feed, now):
        """Unique (tenant, window_start) turns a concurrent duplicate into a skip."""
        window_start = now - timedelta(hours=24)
        db_session.add(Digest(
            tenant_id=tenant.id,
            window_start=window_start,
            window_end=now - timedelta(hours=30),
            title="Existing",
            body="",
            entries=[],
            created_at=now - timedelta(hours=30),
        ))
        _story(db_session, tenant, feed, "Story", now)
        db_session.commit()

        assert generate_digest(tenant.id, session=db_session, now=now) is None
        db_session.commit()
        assert _digest_count(db_session) == 1

    def test_own_session_commits(self, db_session, tenant, feed, now):
        _story(db_session, tenant, feed, "Story", now)
        db_session.commit()

        digest = generate_digest(tenant.id, now=now)

        assert digest is not None
        assert db_session.get(Digest, digest.id) is not None


class TestTriggerPolicy:

    def test_backlog_trigger_ignores_recent_digest(self, db_session, tenant, feed, now):
        _set_settings(db_session, tenant, digest_backlog_threshold=3)
        db_session.add(Digest(tenant_id=tenant.id, window_start=now - timedelta(hours=2),
                              window_end=now - timedelta(hours=1), title="Recent", body="",
                              entries=[], created_at=now - timedelta(hours=1)))
        for i in range(3):
            _story(db_session, tenant, feed, f"Story {i}", now)
        db_session.commit()

        assert count_unread_clusters(db_session, tenant.id) == 3
        assert should_generate_digest(db_session, tenant.id, now=now)

    def test_away_trigger(self, db_session, tenant, feed, now):
        _story(db_session, tenant, feed, "Story", now)
        db_session.commit()

        assert should_generate_digest(db_session, tenant.id, now=now)

    def test_recent_digest_and_small_backlog(self, db_session, tenant, feed, now):
        db_session.add(Digest(tenant_id=tenant.id, window_start=now - timedelta(hours=6),
                              window_end=now - timedelta(hours=5), title="Recent", body="",
                              entries=[], created_at=now - timedelta(hours=5)))
        _story(db_session, tenant, feed, "Story", now)
        db_session.commit()

        assert not should_generate_digest(db_session, tenant.id, now=now)

    def test_empty_backlog(self, db_session, tenant, now):
        assert not should_generate_digest(db_session, tenant.id, now=now)

    def test_maybe_generate(self, db_session, tenant, feed, now):
        _story(db_session, tenant, feed, "Story", now)
        db_session.commit()

        digest = maybe_generate_digest(tenant.id, now=now)

        assert digest is not None
        assert maybe_generate_digest(tenant.id, now=now + timedelta(minutes=5)) is None
        assert _digest_count(db_session) == 1
