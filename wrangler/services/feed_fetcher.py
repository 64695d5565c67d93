"""
Feed Fetcher Service

Conditional HTTP fetch of one feed, guarded by an SSRF check that rejects
non-http(s) schemes and any host that is (or resolves to) a loopback,
private, link-local or otherwise non-public address.

Circuit-breaker bookkeeping lives in feed_service; this module only decides
what happened on the wire and raises:
- FeedBlockedError: URL rejected before any network call (never retried)
- FeedFetchError: timeout, transport error, or non-2xx/304 status
"""

import ipaddress
import logging
import os
import socket
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from urllib.parse import urlsplit

import httpx

from wrangler.services.feed_parser import ParsedItem, ItemParseFailure, parse_feed

logger = logging.getLogger(__name__)


def _log_fetch(msg: str):
    """Log fetch progress with immediate flush."""
    full_msg = f"FETCH: {msg}"
    logger.info(full_msg)
    print(full_msg, file=sys.stdout, flush=True)


# Configuration
FETCH_TIMEOUT = float(os.environ.get("FEED_FETCH_TIMEOUT", "30"))  # seconds
USER_AGENT = os.environ.get("FEED_USER_AGENT", "Mozilla/5.0 (compatible; RSSWrangler/1.0)")
RESOLVE_DNS = os.environ.get("FEED_RESOLVE_DNS", "true").lower() in ("1", "true", "yes")
MAX_REDIRECTS = 5

ACCEPT_HEADER = (
    "application/rss+xml, application/atom+xml, application/feed+json, "
    "application/rdf+xml, application/json;q=0.9, application/xml;q=0.9, "
    "text/xml;q=0.9, */*;q=0.8"
)

ALLOWED_SCHEMES = ("http", "https")
BLOCKED_HOST_SUFFIXES = (".localhost", ".local", ".internal")


class FeedBlockedError(ValueError):
    """Feed URL failed pre-flight validation (scheme or SSRF guard)."""


class FeedFetchError(Exception):
    """Network, timeout or HTTP status failure; counts toward the circuit breaker."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class FetchResponse:
    url: str
    status_code: int
    not_modified: bool = False
    body: bytes = b""
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None


@dataclass
class PollResult:
    items: list[ParsedItem]
    format: Optional[str]
    etag: Optional[str]
    last_modified: Optional[str]
    not_modified: bool
    parse_failures: list[ItemParseFailure] = field(default_factory=list)
    feed_title: Optional[str] = None


# ============================================================================
# SSRF guard
# ============================================================================

def is_blocked_address(address) -> bool:
    """True for any address a user-supplied feed URL must never reach."""
    ip = ipaddress.ip_address(address) if isinstance(address, str) else address
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        not ip.is_global
        or ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_multicast
        or ip.is_reserved
    )


def validate_feed_url(url: str, resolve: bool = RESOLVE_DNS) -> None:
    """
    Reject URLs that could reach internal networks.

    Literal IP hosts are checked directly. Hostnames are resolved (when
    resolve is True) and every resolved address must be public.

    Raises:
        FeedBlockedError: URL is not allowed
        FeedFetchError: hostname could not be resolved
    """
    try:
        parsed = urlsplit(url)
        port = parsed.port
    except ValueError as e:
        raise FeedBlockedError(f"Invalid feed URL: {e}") from e

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise FeedBlockedError(f"Scheme not allowed: {parsed.scheme or '(none)'}")
    if parsed.username or parsed.password:
        raise FeedBlockedError("Feed URLs with credentials are not allowed")

    host = (parsed.hostname or "").rstrip(".").lower()
    if not host:
        raise FeedBlockedError("Feed URL has no host")
    if host == "localhost" or host.endswith(BLOCKED_HOST_SUFFIXES):
        raise FeedBlockedError(f"Blocked host: {host}")

    try:
        literal = ipaddress.ip_address(host)
    except ValueError:
        literal = None

    if literal is not None:
        if is_blocked_address(literal):
            raise FeedBlockedError(f"Blocked address: {host}")
        return

    if not resolve:
        return

    try:
        infos = socket.getaddrinfo(host, port or 443, proto=socket.IPPROTO_TCP)
    except socket.gaierror as e:
        raise FeedFetchError(f"DNS resolution failed for {host}: {e}") from e

    for info in infos:
        address = info[4][0].split("%")[0]
        if is_blocked_address(address):
            raise FeedBlockedError(f"Host {host} resolves to blocked address {address}")


# ============================================================================
# Fetching
# ============================================================================

def fetch_feed(url: str, etag: Optional[str] = None, last_modified: Optional[str] = None,
               client: Optional[httpx.Client] = None, timeout: float = FETCH_TIMEOUT,
               resolve: bool = RESOLVE_DNS) -> FetchResponse:
    """
    Conditional GET of a feed URL.

    Redirects are followed manually so every hop passes the SSRF guard.

    Args:
        url: Feed URL
        etag: Stored ETag, sent as If-None-Match
        last_modified: Stored Last-Modified, sent as If-Modified-Since
        client: Optional httpx client (a private one is created and closed otherwise)
        timeout: Per-request timeout in seconds
        resolve: Resolve hostnames for the SSRF check

    Returns:
        FetchResponse (not_modified=True on HTTP 304)
    """
    validate_feed_url(url, resolve=resolve)

    headers = {"User-Agent": USER_AGENT, "Accept": ACCEPT_HEADER}
    if etag:
        headers["If-None-Match"] = etag
    if last_modified:
        headers["If-Modified-Since"] = last_modified

    own_client = client is None
    if own_client:
        client = httpx.Client(timeout=timeout)

    short_url = url[:60] + "..." if len(url) > 60 else url
    fetch_start = time.time()
    try:
        current_url = url
        for _ in range(MAX_REDIRECTS + 1):
            response = client.get(current_url, headers=headers, timeout=timeout,
                                  follow_redirects=False)
            if not response.is_redirect:
                break
            current_url = str(response.url.join(response.headers["location"]))
            validate_feed_url(current_url, resolve=resolve)
        else:
            raise FeedFetchError(f"Too many redirects for {url}")
    except httpx.TimeoutException as e:
        raise FeedFetchError(f"Timed out after {timeout}s fetching {url}") from e
    except httpx.HTTPError as e:
        raise FeedFetchError(f"Transport error fetching {url}: {e}") from e
    finally:
        if own_client:
            client.close()

    _log_fetch(f"{short_url} -> HTTP {response.status_code} in {time.time() - fetch_start:.1f}s")

    if response.status_code == 304:
        return FetchResponse(
            url=current_url,
            status_code=304,
            not_modified=True,
            etag=response.headers.get("etag") or etag,
            last_modified=response.headers.get("last-modified") or last_modified,
        )

    if not 200 <= response.status_code < 300:
        raise FeedFetchError(f"HTTP {response.status_code} from {url}",
                             status_code=response.status_code)

    return FetchResponse(
        url=current_url,
        status_code=response.status_code,
        body=response.content,
        content_type=response.headers.get("content-type"),
        etag=response.headers.get("etag"),
        last_modified=response.headers.get("last-modified"),
    )


def poll_feed(feed, client: Optional[httpx.Client] = None,
              fetched_at: Optional[datetime] = None,
              resolve: bool = RESOLVE_DNS) -> PollResult:
    """
    Fetch and parse one feed using its stored polling cursor.

    A 304 short-circuits with no items and no parsing.

    Args:
        feed: Feed model (url, etag, last_modified are read)
        client: Optional httpx client
        fetched_at: Fallback timestamp for undated entries
        resolve: Resolve hostnames for the SSRF check

    Returns:
        PollResult

    Raises:
        FeedBlockedError, FeedFetchError, FeedParseError
    """
    response = fetch_feed(
        feed.url,
        etag=feed.etag,
        last_modified=feed.last_modified,
        client=client,
        resolve=resolve,
    )

    if response.not_modified:
        logger.info(f"Feed {feed.url} not modified")
        return PollResult(
            items=[],
            format=None,
            etag=response.etag,
            last_modified=response.last_modified,
            not_modified=True,
        )

    parsed = parse_feed(response.body, response.content_type, fetched_at=fetched_at)
    return PollResult(
        items=parsed.items,
        format=parsed.format,
        etag=response.etag,
        last_modified=response.last_modified,
        not_modified=False,
        parse_failures=parsed.failures,
        feed_title=parsed.feed_title,
    )
