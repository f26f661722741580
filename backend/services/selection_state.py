"""
Session state for page selection and aggregation.

One SessionState owns everything a triage session accumulates: loaded
documents, per-page text, match records, the selected-page set, and page
keyed annotations (diagnoses, AI reasons). Every mutation is a
read-modify-write under a single lock, so completions arriving from
worker threads or interleaved coroutines add to the collections instead of
overwriting each other.
"""
import dataclasses
import logging
import threading
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from config import FUZZY_THRESHOLD
from models.document import DocumentHandle, PageText
from models.match import (
    MatchRecord,
    SearchCategory,
    SearchMode,
    SelectionSource,
    make_key,
    parse_key,
)
from services.search_engine import parse_terms, search, search_dates, validate_matches

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [SearchCategory(id=1, label="Lumbar")]


class SessionState:
    """Selection and aggregation state for one triage session."""

    def __init__(self, session_id: Optional[str] = None):
        """
        Initialize an empty session.

        Args:
            session_id: Optional existing session ID
        """
        self.session_id = session_id or f"sess_{uuid.uuid4().hex[:12]}"
        self._lock = threading.RLock()

        self.documents: List[DocumentHandle] = []
        self.page_texts: Dict[int, Dict[int, PageText]] = {}
        self.matches: List[MatchRecord] = []
        # Selected keys mapped to how they were first selected
        self.selected: Dict[str, SelectionSource] = {}
        self.diagnoses: Dict[str, str] = {}
        self.ai_reasons: Dict[str, str] = {}

        self.keywords = ""
        self.suggested_keywords = ""
        self.categories: List[SearchCategory] = [
            dataclasses.replace(category) for category in DEFAULT_CATEGORIES
        ]

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def add_document(
        self,
        name: str,
        data: bytes,
        file_id: Optional[str] = None,
        file_path: Optional[str] = None
    ) -> DocumentHandle:
        """Append a document; its index is its position in load order."""
        with self._lock:
            handle = DocumentHandle(
                index=len(self.documents),
                name=name,
                data=data,
                file_id=file_id,
                file_path=file_path
            )
            self.documents.append(handle)
            logger.info(f"Session {self.session_id}: added {name} as document {handle.index}")
            return handle

    def get_document(self, index: int) -> DocumentHandle:
        with self._lock:
            if not 0 <= index < len(self.documents):
                raise IndexError(f"No document at index {index}")
            return self.documents[index]

    def remove_document(self, index: int) -> DocumentHandle:
        """
        Remove one document and re-key everything after it.

        Keys of the removed document are purged from the selection, match
        records, page texts, diagnoses and AI reasons; keys of later
        documents move down by one. All collections are rebuilt and swapped
        in while the lock is held, so no reader sees a stale index.
        """
        with self._lock:
            if not 0 <= index < len(self.documents):
                raise IndexError(f"No document at index {index}")

            def shift_key(key: str) -> Optional[str]:
                document_index, page_number = parse_key(key)
                if document_index == index:
                    return None
                if document_index > index:
                    return make_key(document_index - 1, page_number)
                return key

            def shift_keyed(mapping: Mapping[str, Any]) -> Dict[str, Any]:
                shifted = {}
                for key, value in mapping.items():
                    new_key = shift_key(key)
                    if new_key is not None:
                        shifted[new_key] = value
                return shifted

            removed = self.documents[index]
            documents = []
            for handle in self.documents:
                if handle.index == index:
                    continue
                if handle.index > index:
                    handle.index -= 1
                documents.append(handle)

            page_texts = {}
            for document_index, pages in self.page_texts.items():
                if document_index == index:
                    continue
                new_index = document_index - 1 if document_index > index else document_index
                page_texts[new_index] = {
                    page_number: dataclasses.replace(record, document_index=new_index)
                    for page_number, record in pages.items()
                }

            matches = [
                dataclasses.replace(
                    match,
                    document_index=match.document_index - (1 if match.document_index > index else 0)
                )
                for match in self.matches
                if match.document_index != index
            ]

            self.documents = documents
            self.page_texts = page_texts
            self.matches = matches
            self.selected = shift_keyed(self.selected)
            self.diagnoses = shift_keyed(self.diagnoses)
            self.ai_reasons = shift_keyed(self.ai_reasons)

            logger.info(f"Session {self.session_id}: removed document {index} ({removed.name})")
            return removed

    def remove_all_documents(self) -> None:
        """Drop every document and all state derived from them."""
        with self._lock:
            self.documents = []
            self.page_texts = {}
            self.matches = []
            self.selected = {}
            self.diagnoses = {}
            self.ai_reasons = {}
            self.keywords = ""
            self.suggested_keywords = ""
            for category in self.categories:
                category.checked = False
            logger.info(f"Session {self.session_id}: removed all documents")

    def contains(self, handle: DocumentHandle) -> bool:
        """True if this exact handle is still loaded."""
        with self._lock:
            return any(document is handle for document in self.documents)

    def current_key(self, handle: DocumentHandle, page_number: int) -> Optional[str]:
        """
        Key of a page under the handle's current index.

        Returns:
            The key, or None if the handle has been removed
        """
        with self._lock:
            if not self.contains(handle):
                return None
            return make_key(handle.index, page_number)

    def page_exists(self, document_index: int, page_number: int) -> bool:
        with self._lock:
            if not 0 <= document_index < len(self.documents):
                return False
            return self.documents[document_index].has_page(page_number)

    def _require_page(self, key: str) -> Tuple[int, int]:
        document_index, page_number = parse_key(key)
        if not self.page_exists(document_index, page_number):
            raise KeyError(f"Page {key} is not part of the loaded documents")
        return document_index, page_number

    # ------------------------------------------------------------------
    # Page text
    # ------------------------------------------------------------------

    def merge_page_texts(self, document_index: int, records: Iterable[PageText]) -> int:
        """
        Add page text records that do not exist yet.

        Returns:
            Number of records added
        """
        with self._lock:
            self.get_document(document_index)
            pages = self.page_texts.setdefault(document_index, {})
            added = 0
            for record in records:
                if record.document_index != document_index:
                    raise ValueError(
                        f"Record for document {record.document_index} "
                        f"merged into document {document_index}"
                    )
                if record.page_number not in pages:
                    pages[record.page_number] = record
                    added += 1
            return added

    def add_extracted_page(self, handle: DocumentHandle, record: PageText) -> bool:
        """
        Merge a page produced for `handle`, wherever that handle sits now.

        The index stamped on the record is the one the handle had when the
        page was read. It is replaced with the handle's current index, and
        the record is dropped if the handle has been removed.

        Returns:
            True if the page was merged
        """
        with self._lock:
            if not self.contains(handle):
                logger.info(
                    f"Session {self.session_id}: dropped page {record.page_number} "
                    f"of removed document {handle.name}"
                )
                return False
            record = dataclasses.replace(record, document_index=handle.index)
            self.merge_page_texts(handle.index, [record])
            return True

    def replace_page_texts(self, handle: DocumentHandle, records: Iterable[PageText]) -> bool:
        """
        Swap in a fresh set of records for `handle` after a manual re-scan.

        Returns:
            False if the handle was removed before the re-scan finished
        """
        with self._lock:
            if not self.contains(handle):
                logger.info(
                    f"Session {self.session_id}: dropped re-scan of removed document {handle.name}"
                )
                return False
            self.page_texts[handle.index] = {
                record.page_number: dataclasses.replace(record, document_index=handle.index)
                for record in records
            }
            return True

    def page_texts_snapshot(self) -> Dict[int, Dict[int, PageText]]:
        with self._lock:
            return {index: dict(pages) for index, pages in self.page_texts.items()}

    def get_page_text(self, key: str) -> str:
        document_index, page_number = parse_key(key)
        with self._lock:
            record = self.page_texts.get(document_index, {}).get(page_number)
            return record.text if record else ""

    # ------------------------------------------------------------------
    # Matches and selection
    # ------------------------------------------------------------------

    def add_matches(self, records: Iterable[MatchRecord], select: bool = True) -> List[MatchRecord]:
        """
        Append match records and union their pages into the selection.

        Earlier records and selections are never removed. A record repeating
        an existing (document, page, term, source) is skipped.

        Returns:
            The records that were actually added
        """
        with self._lock:
            valid = validate_matches(records, self.documents)
            known = {
                (m.document_index, m.page_number, m.matched_term.lower(), m.source)
                for m in self.matches
            }

            added = []
            for record in valid:
                identity = (
                    record.document_index,
                    record.page_number,
                    record.matched_term.lower(),
                    record.source,
                )
                if identity in known:
                    continue
                known.add(identity)
                self.matches.append(record)
                added.append(record)

            if select:
                for record in valid:
                    self.selected.setdefault(record.key, record.source)

            logger.info(
                f"Session {self.session_id}: {len(added)} new match record(s), "
                f"{len(self.selected)} page(s) selected"
            )
            return added

    def add_ai_pages(self, pages: Iterable[Mapping[str, Any]], query: str = "") -> List[str]:
        """
        Merge pages suggested by AI page analysis.

        Args:
            pages: Items with fileIndex, pageNum and an optional reason
            query: The user request the pages answer

        Returns:
            Keys of the accepted pages, deduplicated, in arrival order
        """
        with self._lock:
            records = []
            reasons = {}
            for page in pages:
                try:
                    document_index = int(page["fileIndex"])
                    page_number = int(page["pageNum"])
                except (KeyError, TypeError, ValueError):
                    logger.warning(f"Ignoring malformed AI page entry: {page!r}")
                    continue
                if not self.page_exists(document_index, page_number):
                    logger.warning(f"Ignoring AI page outside loaded documents: {page!r}")
                    continue

                key = make_key(document_index, page_number)
                if key in reasons:
                    continue
                reasons[key] = str(page.get("reason") or "")
                records.append(MatchRecord(
                    document_index=document_index,
                    page_number=page_number,
                    matched_term=query or "AI suggestion",
                    occurrence_count=1,
                    source_document_name=self.documents[document_index].name,
                    source=SelectionSource.AI
                ))

            for key, reason in reasons.items():
                if reason:
                    self.ai_reasons[key] = reason
            self.add_matches(records)
            return list(reasons)

    def add_page(self, document_index: int, page_number: int) -> str:
        """Explicitly select a page the user picked in the viewer."""
        key = make_key(document_index, page_number)
        with self._lock:
            self._require_page(key)
            self.selected.setdefault(key, SelectionSource.USER)
            return key

    def toggle_selection(self, key: str) -> bool:
        """
        Flip membership of exactly one key.

        Returns:
            True if the key is selected afterwards
        """
        with self._lock:
            self._require_page(key)
            if key in self.selected:
                del self.selected[key]
                return False
            self.selected[key] = SelectionSource.USER
            return True

    def select_all(self) -> None:
        """Select every page that has a match record."""
        with self._lock:
            selected: Dict[str, SelectionSource] = {}
            for match in self.matches:
                selected.setdefault(match.key, match.source)
            self.selected = selected

    def deselect_all(self) -> None:
        with self._lock:
            self.selected = {}

    @property
    def selected_keys(self) -> Set[str]:
        with self._lock:
            return set(self.selected)

    def match_keys(self) -> Set[str]:
        with self._lock:
            return {match.key for match in self.matches}

    def matches_for_document(self, document_index: int) -> List[MatchRecord]:
        with self._lock:
            return [m for m in self.matches if m.document_index == document_index]

    def selected_pages_grouped(self) -> List[Tuple[int, List[int]]]:
        """
        Selected pages grouped by document.

        Documents ascend by index and pages ascend within each document,
        whatever order they were selected in.
        """
        with self._lock:
            grouped: Dict[int, List[int]] = {}
            for key in self.selected:
                document_index, page_number = parse_key(key)
                grouped.setdefault(document_index, []).append(page_number)
            return [(index, sorted(grouped[index])) for index in sorted(grouped)]

    # ------------------------------------------------------------------
    # Search orchestration
    # ------------------------------------------------------------------

    def apply_search(
        self,
        terms: Optional[List[str]] = None,
        mode: SearchMode = SearchMode.EXACT,
        threshold: float = FUZZY_THRESHOLD
    ) -> List[MatchRecord]:
        """Search the session's documents and accumulate the results."""
        if terms is None:
            terms = self.search_terms
        with self._lock:
            documents = list(self.documents)
        found = search(documents, self.page_texts_snapshot(), terms, mode, threshold)
        self.add_matches(found)
        return found

    def apply_date_search(self, date_input: str) -> List[MatchRecord]:
        with self._lock:
            documents = list(self.documents)
        found = search_dates(documents, self.page_texts_snapshot(), date_input)
        self.add_matches(found)
        return found

    # ------------------------------------------------------------------
    # Page annotations
    # ------------------------------------------------------------------

    def set_diagnosis(self, key: str, diagnosis: str) -> None:
        """Attach diagnosis text to a page; empty text clears it."""
        with self._lock:
            self._require_page(key)
            diagnosis = diagnosis.strip()
            if diagnosis:
                self.diagnoses[key] = diagnosis
            else:
                self.diagnoses.pop(key, None)

    def clear_diagnosis(self, key: str) -> None:
        with self._lock:
            self.diagnoses.pop(key, None)

    def diagnosis_groups(self) -> Dict[str, List[str]]:
        """Page keys grouped by diagnosis text, pages in output order."""
        with self._lock:
            groups: Dict[str, List[str]] = {}
            for key in sorted(self.diagnoses, key=parse_key):
                groups.setdefault(self.diagnoses[key], []).append(key)
            return groups

    # ------------------------------------------------------------------
    # Keywords and search categories
    # ------------------------------------------------------------------

    @property
    def search_terms(self) -> List[str]:
        return parse_terms(self.keywords)

    def set_keywords(self, keywords: str) -> None:
        with self._lock:
            self.keywords = keywords

    def suggest_keywords(self, keywords: str) -> None:
        with self._lock:
            self.suggested_keywords = keywords

    def apply_suggested_keywords(self) -> str:
        with self._lock:
            self.keywords = self.suggested_keywords
            return self.keywords

    def get_category(self, category_id: int) -> SearchCategory:
        for category in self.categories:
            if category.id == category_id:
                return category
        raise KeyError(f"No search category {category_id}")

    def add_category(self, label: str, terms: str = "") -> SearchCategory:
        with self._lock:
            next_id = max((c.id for c in self.categories), default=0) + 1
            category = SearchCategory(id=next_id, label=label, terms=terms)
            self.categories.append(category)
            return category

    def set_category_terms(self, category_id: int, terms: str) -> None:
        with self._lock:
            self.get_category(category_id).terms = terms

    def toggle_category(self, category_id: int, checked: bool) -> str:
        """
        Check or uncheck a category, merging its terms into the keywords.

        Returns:
            The updated comma-separated keyword string
        """
        with self._lock:
            category = self.get_category(category_id)
            category.checked = checked
            existing = parse_terms(self.keywords)
            category_terms = parse_terms(category.terms)

            if checked:
                combined = list(dict.fromkeys(existing + category_terms))
            else:
                combined = [term for term in existing if term not in category_terms]

            self.keywords = ", ".join(combined)
            return self.keywords

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the session; document bytes are not included."""
        with self._lock:
            return {
                "session_id": self.session_id,
                "documents": [
                    {
                        "index": d.index,
                        "name": d.name,
                        "page_count": d.page_count,
                        "file_id": d.file_id,
                        "file_path": d.file_path,
                        "error": d.error,
                    }
                    for d in self.documents
                ],
                "page_texts": [
                    dataclasses.asdict(record)
                    for pages in self.page_texts.values()
                    for record in pages.values()
                ],
                "matches": [
                    {**dataclasses.asdict(m), "source": m.source.value}
                    for m in self.matches
                ],
                "selected": {key: source.value for key, source in self.selected.items()},
                "diagnoses": dict(self.diagnoses),
                "ai_reasons": dict(self.ai_reasons),
                "keywords": self.keywords,
                "suggested_keywords": self.suggested_keywords,
                "categories": [dataclasses.asdict(c) for c in self.categories],
            }

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        document_bytes: Optional[Mapping[int, bytes]] = None
    ) -> "SessionState":
        """
        Rebuild a session serialized with to_dict().

        Args:
            data: Serialized session
            document_bytes: PDF bytes per document index, re-fetched from storage
        """
        document_bytes = document_bytes or {}
        state = cls(session_id=data.get("session_id"))

        for entry in sorted(data.get("documents", []), key=lambda d: d["index"]):
            state.documents.append(DocumentHandle(
                index=entry["index"],
                name=entry["name"],
                data=document_bytes.get(entry["index"], b""),
                page_count=entry.get("page_count"),
                file_id=entry.get("file_id"),
                file_path=entry.get("file_path"),
                error=entry.get("error"),
            ))

        for entry in data.get("page_texts", []):
            record = PageText(**entry)
            state.page_texts.setdefault(record.document_index, {})[record.page_number] = record

        state.matches = [
            MatchRecord(**{**entry, "source": SelectionSource(entry["source"])})
            for entry in data.get("matches", [])
        ]
        state.selected = {
            key: SelectionSource(source) for key, source in data.get("selected", {}).items()
        }
        state.diagnoses = dict(data.get("diagnoses", {}))
        state.ai_reasons = dict(data.get("ai_reasons", {}))
        state.keywords = data.get("keywords", "")
        state.suggested_keywords = data.get("suggested_keywords", "")
        if "categories" in data:
            state.categories = [SearchCategory(**entry) for entry in data["categories"]]
        return state
