"""Search match and selection data models."""
from dataclasses import dataclass
from enum import Enum
from typing import Tuple


class SearchMode(str, Enum):
    """How a term is compared against page text."""
    EXACT = "exact"
    FUZZY = "fuzzy"


class SelectionSource(str, Enum):
    """Where a match record or a selected page came from."""
    SEARCH = "search"
    DATE = "date"
    AI = "ai"
    USER = "user"


def make_key(document_index: int, page_number: int) -> str:
    """Build the composite selection key for a page."""
    return f"{document_index}-{page_number}"


def parse_key(key: str) -> Tuple[int, int]:
    """
    Split a selection key into (document_index, page_number).

    Raises:
        ValueError: If the key is not of the form "{int}-{int}"
    """
    parts = key.split("-")
    if len(parts) != 2:
        raise ValueError(f"Malformed selection key: {key!r}")
    document_index, page_number = int(parts[0]), int(parts[1])
    if document_index < 0 or page_number < 1:
        raise ValueError(f"Selection key out of range: {key!r}")
    return document_index, page_number


@dataclass(frozen=True)
class MatchRecord:
    """One (document, page, term, count) result of a search pass."""
    document_index: int
    page_number: int
    matched_term: str
    occurrence_count: int
    source_document_name: str
    source: SelectionSource = SelectionSource.SEARCH

    @property
    def key(self) -> str:
        return make_key(self.document_index, self.page_number)


@dataclass
class SearchCategory:
    """A named, reusable group of comma-separated search terms."""
    id: int
    label: str
    terms: str = ""
    checked: bool = False
