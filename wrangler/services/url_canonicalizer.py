"""
URL Canonicalization Service

Normalizes story URLs into a stable identity so the same article syndicated
with different tracking params, host case, or scheme collapses to one key.
"""

import logging
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

logger = logging.getLogger(__name__)

# Query parameters to always remove (tracking and click ids)
TRACKING_PARAMS = {
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content', 'utm_id',
    'fbclid', 'gclid', 'gclsrc', 'dclid', 'msclkid', 'twclid', 'igshid', 'yclid',
    'mc_cid', 'mc_eid', '_hsenc', '_hsmi', '_ga', '_gl', 'ncid', 'ocid', 'sr_share',
    'ref', 'source',
}

# Any parameter with one of these prefixes is tracking
TRACKING_PREFIXES = ('utm_',)


def is_tracking_param(key: str) -> bool:
    key_lower = key.lower()
    return key_lower in TRACKING_PARAMS or key_lower.startswith(TRACKING_PREFIXES)


def canonicalize_url(raw_url: str) -> str:
    """
    Canonicalize a URL for story identity.

    Rules, applied in order:
    1. http:// becomes https:// (other schemes untouched)
    2. Hostname lowercased (path and query case preserved)
    3. Leading "www." label stripped (not www2., wwwx.)
    4. Trailing "/" removed from the path unless the path is "/"
    5. Tracking query params dropped
    6. Remaining params sorted by key (stable for duplicate keys)
    7. Fragment dropped

    Never raises: unparsable input is returned unchanged.

    Args:
        raw_url: Original URL

    Returns:
        Canonical URL string
    """
    if not raw_url:
        return raw_url

    try:
        parsed = urlsplit(raw_url.strip())
        if not parsed.scheme or not parsed.netloc or not parsed.hostname:
            return raw_url

        original_scheme = parsed.scheme.lower()
        scheme = 'https' if original_scheme == 'http' else original_scheme

        host = parsed.hostname.lower()
        if host.startswith('www.'):
            host = host[4:]
        if ':' in host:
            host = f'[{host}]'

        netloc = host
        if parsed.port is not None and not _is_default_port(original_scheme, parsed.port) \
                and not _is_default_port(scheme, parsed.port):
            netloc = f'{host}:{parsed.port}'
        if parsed.username:
            userinfo = parsed.username
            if parsed.password:
                userinfo = f'{userinfo}:{parsed.password}'
            netloc = f'{userinfo}@{netloc}'

        path = parsed.path
        while len(path) > 1 and path.endswith('/'):
            path = path[:-1]

        query = ''
        if parsed.query:
            params = [
                (key, value)
                for key, value in parse_qsl(parsed.query, keep_blank_values=True)
                if not is_tracking_param(key)
            ]
            # sorted() is stable, so duplicate keys keep their relative order
            params = sorted(params, key=lambda kv: kv[0])
            query = urlencode(params)

        return urlunsplit((scheme, netloc, path, query, ''))

    except ValueError as e:
        logger.warning(f"URL canonicalization failed for '{raw_url}': {e}")
        return raw_url


def _is_default_port(scheme: str, port: int) -> bool:
    return (scheme, port) in {('https', 443), ('http', 80)}
