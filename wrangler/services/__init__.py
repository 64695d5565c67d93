"""
Story Pipeline Services

This package contains the stages of the feed ingestion pipeline:
- url_canonicalizer: Normalize story URLs for stable identity
- feed_fetcher: Conditional HTTP fetch with SSRF guard
- feed_parser: RSS / Atom / JSON Feed / RDF into normalized items
- item_upsert: Idempotent natural-key upserts
- features: Tokens, SimHash, Hamming and Jaccard
- clustering: Near-duplicate story clustering
- digest: Windowed digests of unread clusters
- pipeline: Per-feed orchestration and the polling cycle
"""

from wrangler.services.url_canonicalizer import canonicalize_url
from wrangler.services.feed_fetcher import poll_feed, fetch_feed, validate_feed_url
from wrangler.services.feed_parser import parse_feed
from wrangler.services.item_upsert import upsert_items
from wrangler.services.features import tokenize, simhash, hamming_distance, jaccard_similarity
from wrangler.services.clustering import assign_cluster, assign_clusters, merge_clusters
from wrangler.services.digest import generate_digest, maybe_generate_digest
from wrangler.services.pipeline import run_feed_pipeline, run_polling_cycle

__all__ = [
    'canonicalize_url',
    'poll_feed',
    'fetch_feed',
    'validate_feed_url',
    'parse_feed',
    'upsert_items',
    'tokenize',
    'simhash',
    'hamming_distance',
    'jaccard_similarity',
    'assign_cluster',
    'assign_clusters',
    'merge_clusters',
    'generate_digest',
    'maybe_generate_digest',
    'run_feed_pipeline',
    'run_polling_cycle',
]
