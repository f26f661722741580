"""Keyword and date search across all loaded documents."""
import logging
from typing import Iterable, List, Mapping, Union

from config import FUZZY_THRESHOLD
from models.document import DocumentHandle, PageText
from models.match import MatchRecord, SearchMode, SelectionSource
from services.date_expander import expand_date_formats
from services.similarity import PageTokens, count_exact_matches, count_fuzzy_matches

logger = logging.getLogger(__name__)

# Page texts for one document, keyed by page number or listed in any order
PageTexts = Union[Mapping[int, PageText], Iterable[PageText]]


class NoDocumentsError(Exception):
    """Raised when a search is requested with no documents loaded."""


def parse_terms(raw: str) -> List[str]:
    """Split a comma-separated term list; trims, drops empties and repeats."""
    terms = [term.strip() for term in raw.split(",")]
    return list(dict.fromkeys(term for term in terms if term))


def _pages_of(page_texts: PageTexts) -> List[PageText]:
    records = page_texts.values() if isinstance(page_texts, Mapping) else page_texts
    return sorted(records, key=lambda record: record.page_number)


def search(
    documents: List[DocumentHandle],
    page_texts_by_document: Mapping[int, PageTexts],
    terms: List[str],
    mode: SearchMode = SearchMode.EXACT,
    threshold: float = FUZZY_THRESHOLD,
    source: SelectionSource = SelectionSource.SEARCH
) -> List[MatchRecord]:
    """
    Find every (document, page, term) with at least one occurrence.

    Args:
        documents: Loaded documents, in index order
        page_texts_by_document: Page text records per document index
        terms: Search terms (already split)
        mode: Exact word-boundary matching or fuzzy token matching
        threshold: Minimum similarity for fuzzy mode
        source: Provenance stamped on the produced records

    Returns:
        Match records ordered by document, page, then term order

    Raises:
        NoDocumentsError: If no documents are loaded
    """
    if not documents:
        raise NoDocumentsError("Load at least one document before searching")

    terms = [term.strip() for term in terms if term and term.strip()]
    if not terms:
        logger.info("No search terms given, nothing to search")
        return []

    matches: List[MatchRecord] = []

    for document in documents:
        if document.error:
            logger.warning(f"Skipping {document.name}: {document.error}")
            continue

        page_texts = page_texts_by_document.get(document.index)
        if not page_texts:
            logger.debug(f"No extracted text yet for {document.name}")
            continue

        try:
            document_matches = []
            for record in _pages_of(page_texts):
                if record.document_index != document.index:
                    raise ValueError(
                        f"Page text for document {record.document_index} "
                        f"filed under document {document.index}"
                    )

                # Tokenize once per page, reuse for every term
                tokens = PageTokens(record.text) if mode == SearchMode.FUZZY else None

                for term in terms:
                    if mode == SearchMode.FUZZY:
                        count = count_fuzzy_matches(term, tokens, threshold)
                    else:
                        count = count_exact_matches(term, record.text)

                    if count > 0:
                        document_matches.append(MatchRecord(
                            document_index=document.index,
                            page_number=record.page_number,
                            matched_term=term,
                            occurrence_count=count,
                            source_document_name=document.name,
                            source=source
                        ))
        except Exception as e:
            logger.error(f"Search failed for {document.name}, skipping: {e}", exc_info=True)
            continue

        matches.extend(document_matches)

    logger.info(
        f"{mode.value} search for {len(terms)} term(s) found {len(matches)} match(es) "
        f"on {len({m.key for m in matches})} page(s)"
    )
    return matches


def search_dates(
    documents: List[DocumentHandle],
    page_texts_by_document: Mapping[int, PageTexts],
    date_input: str
) -> List[MatchRecord]:
    """Search every rendering of a date, always in exact mode."""
    variants = expand_date_formats(date_input.strip())
    logger.info(f"Searching {len(variants)} rendering(s) of {date_input!r}")
    return search(
        documents,
        page_texts_by_document,
        variants,
        mode=SearchMode.EXACT,
        source=SelectionSource.DATE
    )


def validate_matches(
    matches: Iterable[MatchRecord],
    documents: List[DocumentHandle]
) -> List[MatchRecord]:
    """Drop records pointing at documents or pages that are not loaded."""
    by_index = {document.index: document for document in documents}
    valid = []
    for match in matches:
        document = by_index.get(match.document_index)
        if document is None or match.page_number < 1:
            logger.warning(f"Dropping match for unknown page {match.key}")
            continue
        if document.page_count is not None and match.page_number > document.page_count:
            logger.warning(f"Dropping match beyond last page: {match.key}")
            continue
        valid.append(match)
    return valid
