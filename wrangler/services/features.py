"""
Feature Extraction Service

Tokenizes item text and computes the 64-bit SimHash fingerprint used for
near-duplicate story detection. Two texts are likely the same story when
their fingerprints are within a small Hamming distance; Jaccard similarity
over the token sets confirms the match.
"""

import hashlib
import logging
import re
from typing import Iterable, Optional

from wrangler.models import to_signed64

logger = logging.getLogger(__name__)

FINGERPRINT_BITS = 64
FINGERPRINT_MASK = (1 << FINGERPRINT_BITS) - 1

STOP_WORDS = frozenset({
    'a', 'an', 'the', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for', 'of',
    'with', 'by', 'from', 'is', 'was', 'are', 'were', 'be', 'been', 'being',
    'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could',
    'should', 'may', 'might', 'shall', 'can', 'this', 'that', 'these', 'those',
    'it', 'its', 'not', 'no', 'so', 'if', 'as',
})

_NON_TOKEN_CHARS = re.compile(r'[^a-z0-9\s]')


def tokenize(text: Optional[str]) -> list[str]:
    """
    Split text into comparison tokens.

    Lowercases, replaces everything outside [a-z0-9] and whitespace with a
    space (accented letters are dropped, not transliterated), splits on
    whitespace, removes stop words and single-character tokens.
    """
    if not text:
        return []
    cleaned = _NON_TOKEN_CHARS.sub(' ', text.lower())
    return [t for t in cleaned.split() if len(t) > 1 and t not in STOP_WORDS]


def _token_hash(token: str) -> int:
    # blake2b keeps fingerprints stable across processes (no PYTHONHASHSEED)
    digest = hashlib.blake2b(token.encode('utf-8'), digest_size=8).digest()
    return int.from_bytes(digest, 'big')


def simhash(text: Optional[str]) -> int:
    """
    Compute a 64-bit SimHash fingerprint.

    Each token votes +1/-1 on every bit position according to its own hash;
    a bit is set in the fingerprint when its total vote is positive.
    Returns 0 when the text has no tokens.
    """
    return simhash_tokens(tokenize(text))


def simhash_tokens(tokens: Iterable[str]) -> int:
    votes = [0] * FINGERPRINT_BITS
    seen_any = False
    for token in tokens:
        seen_any = True
        h = _token_hash(token)
        for bit in range(FINGERPRINT_BITS):
            if (h >> bit) & 1:
                votes[bit] += 1
            else:
                votes[bit] -= 1

    if not seen_any:
        return 0

    fingerprint = 0
    for bit, vote in enumerate(votes):
        if vote > 0:
            fingerprint |= 1 << bit
    return fingerprint


def hamming_distance(a: int, b: int) -> int:
    """Number of differing bits between two 64-bit fingerprints."""
    return bin((a ^ b) & FINGERPRINT_MASK).count('1')


def jaccard_similarity(tokens_a: Iterable[str], tokens_b: Iterable[str]) -> float:
    """
    Intersection over union of two token collections (set semantics).

    Two empty sets are identical (1.0); one empty set against a non-empty
    one shares nothing (0.0).
    """
    set_a = set(tokens_a)
    set_b = set(tokens_b)
    if not set_a and not set_b:
        return 1.0
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def item_text(title: Optional[str], summary: Optional[str]) -> str:
    """Text an item is fingerprinted on: title plus feed summary."""
    return f"{title or ''} {summary or ''}".strip()


def compute_item_features(session, items) -> int:
    """
    Compute and store fingerprints for newly upserted items.

    Args:
        session: Database session
        items: Item instances (already persisted in this session)

    Returns:
        Number of items fingerprinted
    """
    count = 0
    for item in items:
        item.simhash = to_signed64(simhash(item_text(item.title, item.summary)))
        count += 1
    session.flush()
    logger.debug(f"Computed fingerprints for {count} items")
    return count
