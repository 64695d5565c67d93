"""
Contract tests for feed fetching.

Tests conditional GET, 304 handling, redirects, the SSRF guard and network
errors against scripted HTTP responses.
"""

from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest

from wrangler.services.feed_fetcher import (
    FeedBlockedError, FeedFetchError, MAX_REDIRECTS, fetch_feed, poll_feed,
)
from wrangler.services.feed_parser import FORMAT_RSS, FeedParseError

FEED_URL = "https://feeds.example.com/news.xml"

RSS_BODY = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>News</title>
<item><title>Story one</title><link>https://example.com/1</link><guid>one</guid></item>
<item><title>Story two</title><link>https://example.com/2</link><guid>two</guid></item>
</channel></rss>
"""


def _feed(url=FEED_URL, etag=None, last_modified=None):
    return SimpleNamespace(url=url, etag=etag, last_modified=last_modified)


class TestConditionalGet:

    def test_sends_validators(self, mock_http):
        client, requests = mock_http(lambda request: httpx.Response(304))

        fetch_feed(FEED_URL, etag='"v1"', last_modified="Thu, 15 Oct 2026 12:00:00 GMT",
                   client=client, resolve=False)

        headers = requests[0].headers
        assert headers["If-None-Match"] == '"v1"'
        assert headers["If-Modified-Since"] == "Thu, 15 Oct 2026 12:00:00 GMT"
        assert "RSSWrangler" in headers["User-Agent"]

    def test_no_validators_on_first_poll(self, mock_http):
        client, requests = mock_http(lambda request: httpx.Response(200, content=RSS_BODY))

        fetch_feed(FEED_URL, client=client, resolve=False)

        assert "If-None-Match" not in requests[0].headers
        assert "If-Modified-Since" not in requests[0].headers

    def test_304_is_not_modified(self, mock_http):
        client, _ = mock_http(lambda request: httpx.Response(304))

        response = fetch_feed(FEED_URL, etag='"v1"', client=client, resolve=False)

        assert response.not_modified
        assert response.body == b""
        assert response.etag == '"v1"'

    def test_200_returns_body_and_new_validators(self, mock_http):
        client, _ = mock_http(lambda request: httpx.Response(
            200,
            content=RSS_BODY,
            headers={
                "Content-Type": "application/rss+xml",
                "ETag": '"v2"',
                "Last-Modified": "Fri, 16 Oct 2026 08:00:00 GMT",
            },
        ))

        response = fetch_feed(FEED_URL, etag='"v1"', client=client, resolve=False)

        assert not response.not_modified
        assert response.body == RSS_BODY
        assert response.content_type == "application/rss+xml"
        assert response.etag == '"v2"'
        assert response.last_modified == "Fri, 16 Oct 2026 08:00:00 GMT"


class TestFetchFailures:

    def test_server_error(self, mock_http):
        client, _ = mock_http(lambda request: httpx.Response(500))

        with pytest.raises(FeedFetchError) as exc_info:
            fetch_feed(FEED_URL, client=client, resolve=False)
        assert exc_info.value.status_code == 500

    def test_not_found(self, mock_http):
        client, _ = mock_http(lambda request: httpx.Response(404))

        with pytest.raises(FeedFetchError) as exc_info:
            fetch_feed(FEED_URL, client=client, resolve=False)
        assert exc_info.value.status_code == 404

    def test_timeout(self, mock_http):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client, _ = mock_http(handler)

        with pytest.raises(FeedFetchError) as exc_info:
            fetch_feed(FEED_URL, client=client, resolve=False, timeout=0.5)
        assert isinstance(exc_info.value.__cause__, httpx.TimeoutException)

    def test_connection_error(self, mock_http):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = mock_http(handler)

        with pytest.raises(FeedFetchError):
            fetch_feed(FEED_URL, client=client, resolve=False)


class TestSsrfGuard:

    def test_blocked_before_any_request(self, mock_http):
        client, requests = mock_http(lambda request: httpx.Response(200, content=RSS_BODY))

        with pytest.raises(FeedBlockedError):
            fetch_feed("http://127.0.0.1:8080/feed", client=client, resolve=False)
        assert requests == []

    def test_bad_scheme_blocked(self, mock_http):
        client, requests = mock_http(lambda request: httpx.Response(200))

        with pytest.raises(FeedBlockedError):
            fetch_feed("file:///etc/passwd", client=client, resolve=False)
        assert requests == []

    def test_redirect_to_private_address_blocked(self, mock_http):
        client, requests = mock_http(lambda request: httpx.Response(
            302, headers={"Location": "http://10.0.0.5/admin"}
        ))

        with pytest.raises(FeedBlockedError):
            fetch_feed(FEED_URL, client=client, resolve=False)
        assert len(requests) == 1

    def test_public_redirect_followed(self, mock_http):
        def handler(request):
            if request.url.host == "feeds.example.com":
                return httpx.Response(301, headers={"Location": "https://cdn.example.com/news.xml"})
            return httpx.Response(200, content=RSS_BODY)

        client, requests = mock_http(handler)

        response = fetch_feed(FEED_URL, client=client, resolve=False)

        assert response.url == "https://cdn.example.com/news.xml"
        assert [r.url.host for r in requests] == ["feeds.example.com", "cdn.example.com"]

    def test_redirect_loop_fails(self, mock_http):
        client, requests = mock_http(lambda request: httpx.Response(
            302, headers={"Location": FEED_URL}
        ))

        with pytest.raises(FeedFetchError):
            fetch_feed(FEED_URL, client=client, resolve=False)
        assert len(requests) == MAX_REDIRECTS + 1


class TestPollFeed:

    def test_parses_items(self, mock_http):
        client, _ = mock_http(lambda request: httpx.Response(
            200, content=RSS_BODY, headers={"ETag": '"v3"'}
        ))
        fetched_at = datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc)

        result = poll_feed(_feed(), client=client, fetched_at=fetched_at, resolve=False)

        assert result.format == FORMAT_RSS
        assert [item.guid for item in result.items] == ["one", "two"]
        assert all(item.published_at == fetched_at for item in result.items)
        assert result.etag == '"v3"'
        assert result.feed_title == "News"

    def test_not_modified_skips_parsing(self, mock_http):
        client, _ = mock_http(lambda request: httpx.Response(304))

        result = poll_feed(_feed(etag='"v1"'), client=client, resolve=False)

        assert result.not_modified
        assert result.items == []
        assert result.etag == '"v1"'

    def test_unparsable_body(self, mock_http):
        client, _ = mock_http(lambda request: httpx.Response(
            200, content=b"<html><body>Moved</body></html>", headers={"Content-Type": "text/html"}
        ))

        with pytest.raises(FeedParseError):
            poll_feed(_feed(), client=client, resolve=False)
