"""Text normalization and fuzzy similarity for demand postings.

Both sides of every comparison go through :func:`normalize_text`; the
scorers normalize their inputs themselves so callers cannot mix a
normalized string with a raw one.
"""

from __future__ import annotations

import hashlib
import unicodedata


def normalize_text(value: str | None) -> str:
    """Lowercase and drop every whitespace and Unicode punctuation character.

    >>> normalize_text("  Need FICO, Shanghai!  ")
    'needficoshanghai'
    """
    if not value:
        return ""
    lowered = value.lower()
    kept = [char for char in lowered if not char.isspace() and not _is_punctuation(char)]
    return "".join(kept).strip()


def text_similarity(left: str | None, right: str | None) -> float:
    """Similarity in [0, 1] between two postings' free text.

    Identical normalized text scores 1. When one normalized string contains
    the other the score is the length ratio, otherwise the LCS length over
    the longer length.
    """
    normalized_left = normalize_text(left)
    normalized_right = normalize_text(right)
    if not normalized_left or not normalized_right:
        return 0.0
    if normalized_left == normalized_right:
        return 1.0

    shorter, longer = sorted((normalized_left, normalized_right), key=len)
    if shorter in longer:
        return len(shorter) / len(longer)

    return longest_common_subsequence(normalized_left, normalized_right) / len(longer)


def longest_common_subsequence(left: str, right: str) -> int:
    if not left or not right:
        return 0
    # Keep the shorter string on the inner axis so each row stays small.
    if len(right) > len(left):
        left, right = right, left

    previous = [0] * (len(right) + 1)
    for left_char in left:
        current = [0] * (len(right) + 1)
        for index, right_char in enumerate(right, start=1):
            if left_char == right_char:
                current[index] = previous[index - 1] + 1
            else:
                current[index] = max(previous[index], current[index - 1])
        previous = current
    return previous[-1]


def canonical_demand_id(normalized_text: str, raw_id: str) -> str:
    """Content-derived identifier for a new canonical demand.

    The raw posting id is mixed in so identical wording submitted twice with
    similarity disabled still yields two distinct canonical records.
    """
    digest = hashlib.sha256(f"{normalized_text}\x1f{raw_id}".encode("utf-8"))
    return digest.hexdigest()


def normalized_text_lock_key(normalized_text: str) -> int:
    """Signed 64-bit key for per-text advisory locks."""
    digest = hashlib.sha256(normalized_text.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=True)


def _is_punctuation(char: str) -> bool:
    return unicodedata.category(char).startswith("P")
