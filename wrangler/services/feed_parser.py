"""
Feed Format Parser

Turns a raw feed payload (RSS 2.0, Atom, JSON Feed, RDF/RSS 1.0) into a list
of normalized ParsedItems. The format is sniffed from the payload itself;
the Content-Type header is only a hint because many feeds mislabel it.

XML formats are read with feedparser; JSON Feed is read directly. Each
format yields its own raw entry variant, and each variant has exactly one
conversion function into ParsedItem.
"""

import io
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Optional, Union

import feedparser
from bs4 import BeautifulSoup

from wrangler.services.url_canonicalizer import canonicalize_url

logger = logging.getLogger(__name__)

UNTITLED = "(untitled)"

FORMAT_RSS = "rss"
FORMAT_ATOM = "atom"
FORMAT_JSON = "json"
FORMAT_RDF = "rdf"

# Root element local name -> format
XML_ROOTS = {
    'rss': FORMAT_RSS,
    'feed': FORMAT_ATOM,
    'rdf': FORMAT_RDF,
}

_XML_ROOT_RE = re.compile(r'<([A-Za-z_][\w.\-]*(?::[A-Za-z_][\w.\-]*)?)')


class FeedParseError(ValueError):
    """The payload as a whole could not be read as any supported feed format."""


# ============================================================================
# Result types
# ============================================================================

@dataclass
class ParsedItem:
    """One feed entry normalized across all formats."""
    guid: Optional[str]
    url: str
    canonical_url: str
    title: str
    summary: Optional[str]
    published_at: datetime
    author: Optional[str] = None
    hero_image_url: Optional[str] = None


@dataclass
class ItemParseFailure:
    index: int
    error: str


@dataclass
class ParseResult:
    format: str
    items: list[ParsedItem]
    failures: list[ItemParseFailure] = field(default_factory=list)
    feed_title: Optional[str] = None


# ============================================================================
# Raw entry variants
# ============================================================================

@dataclass(frozen=True)
class RssItem:
    entry: Mapping[str, Any]


@dataclass(frozen=True)
class AtomEntry:
    entry: Mapping[str, Any]


@dataclass(frozen=True)
class RdfItem:
    entry: Mapping[str, Any]


@dataclass(frozen=True)
class JsonFeedItem:
    entry: Mapping[str, Any]


RawItem = Union[RssItem, AtomEntry, RdfItem, JsonFeedItem]

_VARIANTS = {
    FORMAT_RSS: RssItem,
    FORMAT_ATOM: AtomEntry,
    FORMAT_RDF: RdfItem,
    FORMAT_JSON: JsonFeedItem,
}


# ============================================================================
# Format detection and parsing
# ============================================================================

def detect_format(body: Union[str, bytes], content_type_hint: Optional[str] = None) -> str:
    """
    Sniff the feed format from the payload.

    JSON Feed is recognized by a leading '{'; XML formats by the local name
    of the root element (rss, feed, RDF).

    Raises:
        FeedParseError: if no supported format is recognized
    """
    if isinstance(body, bytes):
        body = body.decode('utf-8', errors='replace')
    text = body.lstrip('﻿ \t\r\n')

    if text.startswith('{'):
        return FORMAT_JSON

    for match in _XML_ROOT_RE.finditer(text[:4096]):
        local_name = match.group(1).split(':')[-1].lower()
        if local_name in XML_ROOTS:
            return XML_ROOTS[local_name]
        break

    hint = (content_type_hint or '').lower()
    raise FeedParseError(f"Unrecognized feed payload (content-type hint: {hint or 'none'})")


def parse_feed(raw_body: Union[str, bytes], content_type_hint: Optional[str] = None,
               fetched_at: Optional[datetime] = None) -> ParseResult:
    """
    Parse a raw feed payload into normalized items.

    A malformed entry is skipped and recorded in ParseResult.failures; the
    remaining entries are still returned.

    Args:
        raw_body: Response body
        content_type_hint: Content-Type header value, if any
        fetched_at: Fallback timestamp for entries without a usable date

    Returns:
        ParseResult with format, items and per-item failures

    Raises:
        FeedParseError: if the payload is not a recognizable feed
    """
    if fetched_at is None:
        fetched_at = datetime.now(timezone.utc)

    feed_format = detect_format(raw_body, content_type_hint)

    if feed_format == FORMAT_JSON:
        raw_items, feed_title = _read_json_feed(raw_body)
    else:
        raw_items, feed_title = _read_xml_feed(raw_body, feed_format, content_type_hint)

    result = ParseResult(format=feed_format, items=[], feed_title=feed_title)
    for index, raw in enumerate(raw_items):
        try:
            result.items.append(to_parsed_item(raw, fetched_at))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            result.failures.append(ItemParseFailure(index=index, error=str(e)))
            logger.warning(f"Skipping malformed {feed_format} entry #{index}: {e}")

    logger.info(
        f"Parsed {len(result.items)} {feed_format} items "
        f"({len(result.failures)} skipped)"
    )
    return result


def _read_xml_feed(raw_body, feed_format: str, content_type_hint: Optional[str]):
    if isinstance(raw_body, str):
        raw_body = raw_body.encode('utf-8')

    response_headers = {'content-type': content_type_hint} if content_type_hint else None
    result = feedparser.parse(io.BytesIO(raw_body), response_headers=response_headers)

    if result.get('bozo') and not result.get('entries'):
        raise FeedParseError(f"Unreadable {feed_format} payload: {result.get('bozo_exception')}")
    if result.get('bozo'):
        # feedparser often recovers partial data
        logger.warning(f"{feed_format} parsing issue: {result.get('bozo_exception')}")

    variant = _VARIANTS[feed_format]
    feed_title = _first_non_empty(result.get('feed', {}).get('title'))
    return [variant(entry) for entry in result.get('entries', [])], feed_title


def _read_json_feed(raw_body):
    try:
        document = json.loads(raw_body)
    except ValueError as e:
        raise FeedParseError(f"Invalid JSON Feed: {e}") from e

    if not isinstance(document, dict) or not isinstance(document.get('items'), list):
        raise FeedParseError("JSON payload is not a JSON Feed (missing items array)")

    feed_title = _first_non_empty(document.get('title'))
    return [JsonFeedItem(entry) for entry in document['items']], feed_title


def to_parsed_item(raw: RawItem, fetched_at: datetime) -> ParsedItem:
    """Convert one raw entry variant into a ParsedItem."""
    converter = _CONVERTERS[type(raw)]
    return converter(raw.entry, fetched_at)


# ============================================================================
# Per-variant conversion
# ============================================================================

def _convert_rss(entry, fetched_at: datetime) -> ParsedItem:
    raw_summary = _first_non_empty(_content_value(entry), entry.get('summary'))
    url = _first_non_empty(entry.get('link'))
    return _build_item(
        native_id=entry.get('id'),
        url=url,
        title=entry.get('title'),
        raw_summary=raw_summary,
        published_at=_feedparser_date(entry) or fetched_at,
        author=_feedparser_author(entry),
        hero_image_url=_first_non_empty(
            _media_content_image(entry),
            _media_thumbnail(entry),
            _enclosure_image(entry),
            _html_image(raw_summary),
        ),
    )


def _convert_rdf(entry, fetched_at: datetime) -> ParsedItem:
    raw_summary = _first_non_empty(_content_value(entry), entry.get('summary'))
    return _build_item(
        native_id=entry.get('id'),
        url=_first_non_empty(entry.get('link'), entry.get('id')),
        title=entry.get('title'),
        raw_summary=raw_summary,
        published_at=_feedparser_date(entry) or fetched_at,
        author=_feedparser_author(entry),
        hero_image_url=_first_non_empty(
            _media_content_image(entry),
            _media_thumbnail(entry),
            _html_image(raw_summary),
        ),
    )


def _convert_atom(entry, fetched_at: datetime) -> ParsedItem:
    raw_summary = _first_non_empty(entry.get('summary'), _content_value(entry))
    url = _first_non_empty(_select_atom_link(entry.get('links')), _as_url(entry.get('id')))
    return _build_item(
        native_id=entry.get('id'),
        url=url,
        title=entry.get('title'),
        raw_summary=raw_summary,
        published_at=_feedparser_date(entry) or fetched_at,
        author=_feedparser_author(entry),
        hero_image_url=_first_non_empty(
            _media_content_image(entry),
            _media_thumbnail(entry),
            _enclosure_image(entry),
            _html_image(_content_value(entry)),
            _html_image(raw_summary),
        ),
    )


def _convert_json(entry, fetched_at: datetime) -> ParsedItem:
    if not isinstance(entry, Mapping):
        raise TypeError(f"JSON Feed item must be an object, got {type(entry).__name__}")

    raw_summary = _first_non_empty(
        entry.get('summary'), entry.get('content_text'), entry.get('content_html')
    )
    native_id = entry.get('id')
    if native_id is not None and not isinstance(native_id, str):
        native_id = str(native_id)

    return _build_item(
        native_id=native_id,
        url=_first_non_empty(entry.get('url'), entry.get('external_url')),
        title=entry.get('title'),
        raw_summary=raw_summary,
        published_at=(
            parse_timestamp(entry.get('date_published'))
            or parse_timestamp(entry.get('date_modified'))
            or fetched_at
        ),
        author=_json_author(entry),
        hero_image_url=_first_non_empty(
            entry.get('image'),
            entry.get('banner_image'),
            _json_attachment_image(entry.get('attachments')),
            _html_image(entry.get('content_html')),
        ),
    )


_CONVERTERS = {
    RssItem: _convert_rss,
    AtomEntry: _convert_atom,
    RdfItem: _convert_rdf,
    JsonFeedItem: _convert_json,
}


def _build_item(native_id, url, title, raw_summary, published_at, author,
                hero_image_url) -> ParsedItem:
    url = url or ''
    canonical = canonicalize_url(url) if url else ''
    guid = _first_non_empty(native_id) or canonical or None
    clean_title = html_to_text(title) or None

    # Without a link or id the natural key would change on every poll
    if not guid:
        raise ValueError("entry has neither a link nor an id")

    return ParsedItem(
        guid=guid,
        url=url,
        canonical_url=canonical,
        title=clean_title or UNTITLED,
        summary=html_to_text(raw_summary) or None,
        published_at=published_at,
        author=author,
        hero_image_url=hero_image_url,
    )


# ============================================================================
# Field helpers
# ============================================================================

def html_to_text(value: Optional[str]) -> str:
    """Reduce HTML (or plain text) to whitespace-normalized plain text."""
    if not value:
        return ''
    if '<' not in value and '&' not in value:
        return ' '.join(value.split())
    soup = BeautifulSoup(value, 'html.parser')
    for tag in soup(['script', 'style', 'iframe']):
        tag.decompose()
    return ' '.join(soup.get_text(separator=' ').split())


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse RFC-822 (RSS) or ISO-8601 (Atom, JSON Feed, dc:date) timestamps.

    Returns a UTC datetime, or None when the value is missing or unparsable.
    """
    if not value or not isinstance(value, str):
        return None
    value = value.strip()

    parsed = None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        parsed = None

    if parsed is None:
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _feedparser_date(entry) -> Optional[datetime]:
    for key in ('published_parsed', 'updated_parsed', 'created_parsed'):
        value = entry.get(key)
        if value:
            try:
                return datetime(*value[:6], tzinfo=timezone.utc)
            except (TypeError, ValueError):
                continue
    for key in ('published', 'updated', 'created'):
        parsed = parse_timestamp(entry.get(key))
        if parsed:
            return parsed
    return None


def _feedparser_author(entry) -> Optional[str]:
    detail = entry.get('author_detail') or {}
    name = _first_non_empty(detail.get('name'))
    if name:
        return name
    for author in entry.get('authors') or []:
        name = _first_non_empty(author.get('name'))
        if name:
            return name
    return _first_non_empty(entry.get('author'))


def _json_author(entry) -> Optional[str]:
    for author in entry.get('authors') or []:
        if isinstance(author, Mapping):
            name = _first_non_empty(author.get('name'))
            if name:
                return name
    legacy = entry.get('author')
    if isinstance(legacy, Mapping):
        return _first_non_empty(legacy.get('name'))
    return None


def _content_value(entry) -> Optional[str]:
    for content in entry.get('content') or []:
        value = _first_non_empty(content.get('value'))
        if value:
            return value
    return None


def _media_content_image(entry) -> Optional[str]:
    for media in entry.get('media_content') or []:
        url = _first_non_empty(media.get('url'))
        if not url:
            continue
        media_type = (media.get('type') or '').lower()
        medium = (media.get('medium') or '').lower()
        if media_type.startswith('image/') or medium == 'image' or (not media_type and not medium):
            return url
    return None


def _media_thumbnail(entry) -> Optional[str]:
    for thumbnail in entry.get('media_thumbnail') or []:
        url = _first_non_empty(thumbnail.get('url'))
        if url:
            return url
    return None


def _enclosure_image(entry) -> Optional[str]:
    for enclosure in entry.get('enclosures') or []:
        url = _first_non_empty(enclosure.get('href'), enclosure.get('url'))
        if url and (enclosure.get('type') or '').lower().startswith('image/'):
            return url
    return None


def _json_attachment_image(attachments) -> Optional[str]:
    for attachment in attachments or []:
        if not isinstance(attachment, Mapping):
            continue
        url = _first_non_empty(attachment.get('url'))
        if url and (attachment.get('mime_type') or '').lower().startswith('image/'):
            return url
    return None


def _html_image(html: Optional[str]) -> Optional[str]:
    if not html or '<img' not in html.lower():
        return None
    img = BeautifulSoup(html, 'html.parser').find('img', src=True)
    return _first_non_empty(img['src']) if img else None


def _select_atom_link(links) -> Optional[str]:
    """Prefer rel="alternate" (or unmarked) links; never pick rel="related" first."""
    if not links:
        return None
    for link in links:
        rel = (link.get('rel') or 'alternate').lower()
        if rel == 'alternate' and _first_non_empty(link.get('href')):
            return link['href'].strip()
    for link in links:
        rel = (link.get('rel') or '').lower()
        if rel not in ('related', 'self', 'enclosure') and _first_non_empty(link.get('href')):
            return link['href'].strip()
    return None


def _as_url(value: Optional[str]) -> Optional[str]:
    candidate = _first_non_empty(value)
    if candidate and candidate.lower().startswith(('http://', 'https://')):
        return candidate
    return None


def _first_non_empty(*values) -> Optional[str]:
    for value in values:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped:
                return stripped
    return None
