import re
from enum import IntEnum


class KeyStrategy(IntEnum):
    """How a segment URL maps to its cache key."""

    SEQUENCE = 0  # sequence number w/ extension, e.g. "123.ts"
    FILENAME = 1  # last path segment, e.g. "media_b800000_123.ts"
    FULL_URL = 2


SEGMENT_EXTENSION_PATTERN = re.compile(r"\.ts(?:[?#]|$)", re.IGNORECASE)
SEGMENT_FILENAME_PATTERN = re.compile(r"^.*?/([^/]+\.ts).*$", re.IGNORECASE)
SEGMENT_SEQUENCE_PATTERN = re.compile(r"^.*?(\d+\.ts).*$", re.IGNORECASE)


def should_fetch(url: str) -> bool:
    """Return True if the URL names a cacheable media segment."""
    return SEGMENT_EXTENSION_PATTERN.search(url) is not None


def derive_key(url: str, strategy: int = KeyStrategy.SEQUENCE) -> str:
    """
    Derive the cache key for a segment URL.

    A URL that does not match the strategy's pattern is its own key.

    Args:
        url (str): The segment URL.
        strategy (int): A KeyStrategy value. Unknown values use SEQUENCE.

    Returns:
        str: The cache key.
    """
    if strategy == KeyStrategy.FULL_URL:
        return url
    if strategy == KeyStrategy.FILENAME:
        return SEGMENT_FILENAME_PATTERN.sub(r"\1", url, count=1)
    return SEGMENT_SEQUENCE_PATTERN.sub(r"\1", url, count=1)
