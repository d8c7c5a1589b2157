"""
Utility functions for WebPilot.

Provides helpers for text processing, JSON extraction and action
description comparison.
"""

import math
import re
from typing import Optional


def truncate_text(text: str, max_chars: int, suffix: str = "...") -> str:
    """Truncate text to a maximum number of characters.

    Args:
        text: Text to truncate
        max_chars: Maximum number of characters
        suffix: Suffix to add when truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_chars:
        return text
    return text[:max_chars - len(suffix)] + suffix


def clean_text(text: str) -> str:
    """Collapse runs of whitespace and strip the ends."""
    return re.sub(r'\s+', ' ', text).strip()


def estimate_tokens(text: str) -> int:
    """Heuristic token estimate: one token per four characters."""
    return math.ceil(len(text) / 4)


def extract_json_from_response(response: str) -> Optional[str]:
    """Extract JSON from a response that might contain markdown or extra text.

    Args:
        response: Raw response string

    Returns:
        Extracted JSON string, or None if not found
    """
    # Code blocks first
    code_block_pattern = r'```(?:json)?\s*(\{[\s\S]*?\})\s*```'
    match = re.search(code_block_pattern, response)
    if match:
        return match.group(1)

    # Then the outermost raw object
    json_pattern = r'\{[\s\S]*\}'
    match = re.search(json_pattern, response)
    if match:
        return match.group(0)

    return None


def normalize_description(text: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    text = re.sub(r'[^a-z0-9\s]', '', text.lower())
    return clean_text(text)


def descriptions_similar(first: str, second: str) -> bool:
    """Check whether two action descriptions say the same thing.

    Two descriptions are similar when, after normalization, they are
    equal, one contains the other (and the shorter one has more than 10
    characters), or their significant words (longer than 3 characters)
    overlap by more than 70%.

    Args:
        first: First description
        second: Second description

    Returns:
        True if the descriptions are similar
    """
    a = normalize_description(first or "")
    b = normalize_description(second or "")
    if not a or not b:
        return False
    if a == b:
        return True

    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    if len(shorter) > 10 and shorter in longer:
        return True

    words_a = {w for w in a.split() if len(w) > 3}
    words_b = {w for w in b.split() if len(w) > 3}
    if not words_a or not words_b:
        return False
    common = words_a & words_b
    return len(common) / max(len(words_a), len(words_b)) > 0.7


def same_url(first: Optional[str], second: Optional[str]) -> bool:
    """Compare two URLs ignoring a trailing slash and surrounding space."""
    if not first or not second:
        return False
    return first.strip().rstrip('/') == second.strip().rstrip('/')

