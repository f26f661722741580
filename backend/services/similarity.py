"""Approximate and exact string matching for page search."""
import re
from functools import lru_cache
from typing import Dict, List

from config import FUZZY_THRESHOLD

_NON_WORD = re.compile(r"[^\w]")


def levenshtein_distance(a: str, b: str) -> int:
    """
    Edit distance between two strings.

    Insertion, deletion and substitution each cost 1.
    """
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    # Keep the shorter string on the inner axis
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,  # deletion
                current[j - 1] + 1,  # insertion
                previous[j - 1] + (char_a != char_b),  # substitution
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """
    Case-insensitive similarity in [0, 1], 1.0 meaning identical.

    Computed as 1 - levenshtein(lower(a), lower(b)) / max(len(a), len(b)).
    """
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a.lower(), b.lower()) / longest


def tokenize(text: str) -> List[str]:
    """Split on whitespace and strip non-word characters; empty tokens are dropped."""
    tokens = []
    for raw in text.split():
        token = _NON_WORD.sub("", raw)
        if token:
            tokens.append(token)
    return tokens


class PageTokens:
    """Tokens of one page, computed once and shared by every search term."""

    def __init__(self, text: str):
        self.tokens = tokenize(text)
        self._windows: Dict[int, List[str]] = {1: self.tokens}

    def windows(self, size: int) -> List[str]:
        """Consecutive token groups of `size` words, joined by single spaces."""
        if size not in self._windows:
            self._windows[size] = [
                " ".join(self.tokens[i:i + size])
                for i in range(len(self.tokens) - size + 1)
            ]
        return self._windows[size]


def count_fuzzy_matches(
    term: str,
    page_tokens: PageTokens,
    threshold: float = FUZZY_THRESHOLD
) -> int:
    """
    Count page tokens that approximately equal the term.

    Multi-word terms are compared against windows of the same number of
    tokens, so "chest pain" can still match "chest paln".

    Args:
        term: Search term
        page_tokens: Tokenized page text
        threshold: Minimum similarity for a token to count

    Returns:
        Number of tokens (or token windows) scoring >= threshold
    """
    term_words = tokenize(term)
    if not term_words:
        return 0

    normalized_term = " ".join(term_words)
    candidates = page_tokens.windows(len(term_words))
    return sum(1 for candidate in candidates if similarity(normalized_term, candidate) >= threshold)


@lru_cache(maxsize=256)
def _exact_pattern(term: str) -> "re.Pattern[str]":
    # Lookarounds behave like \b for word-character edges and still work
    # for terms that start or end with punctuation.
    return re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", re.IGNORECASE)


def count_exact_matches(term: str, text: str) -> int:
    """Count case-insensitive, whole-word literal occurrences of term in text."""
    term = term.strip()
    if not term:
        return 0
    return len(_exact_pattern(term).findall(text))
