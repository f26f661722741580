"""Automatic per-page diagnosis suggestion with cooperative cancellation."""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import fitz  # PyMuPDF

from config import AI_PAGE_TIMEOUT
from models.document import DocumentHandle
from models.match import parse_key
from services.cancellation import CancellationToken
from services.llm_client import LLMClient, LLMClientError
from services.selection_state import SessionState
from services.text_extractor import TextExtractor

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Tally of an auto-scan run."""
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    failures: Dict[str, str] = field(default_factory=dict)  # page key -> error code


class DiagnosisScanner:
    """Walks pages in order and asks the vision service for a diagnosis on each."""

    def __init__(
        self,
        llm_client: LLMClient,
        extractor: TextExtractor,
        page_timeout: float = AI_PAGE_TIMEOUT,
        on_diagnosis: Optional[Callable[[DocumentHandle, int, str], None]] = None
    ):
        """
        Initialize the scanner.

        Args:
            llm_client: Client exposing suggest_diagnosis()
            extractor: Used to render page screenshots
            page_timeout: Seconds one page's AI call may take before it counts as failed
            on_diagnosis: Called off the event loop with (handle, page, text) after
                each committed diagnosis, e.g. to persist it
        """
        self.llm_client = llm_client
        self.extractor = extractor
        self.page_timeout = page_timeout
        self.on_diagnosis = on_diagnosis

    async def _page_image(self, pdf_cache: Dict[int, fitz.Document],
                          handle: DocumentHandle, page_number: int) -> Optional[str]:
        try:
            if id(handle) not in pdf_cache:
                pdf_cache[id(handle)] = await asyncio.to_thread(
                    self.extractor.open_document, handle
                )
            return await asyncio.to_thread(
                self.extractor.page_image_data_url, pdf_cache[id(handle)], page_number
            )
        except Exception as e:
            # The text alone can still carry the request
            logger.warning(f"Could not render page {page_number} of {handle.name}: {e}")
            return None

    async def scan(
        self,
        session: SessionState,
        keys: Optional[Iterable[str]] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[ScanResult], None]] = None
    ) -> ScanResult:
        """
        Suggest a diagnosis for each page and commit it as soon as it arrives.

        Pages run in (document, page) order. Keys are resolved to documents
        once, at the start; if a document is removed mid-scan, its remaining
        pages are skipped and pages of later documents are committed under
        their shifted keys. The token is checked before each page and between
        the render and AI-call steps of a page; a stop abandons only the page
        in flight, everything committed before it is kept. A failing page
        (timeout, rate limit, quota, anything else) is tallied and the loop
        moves on.

        Args:
            session: Session to read pages from and write diagnoses into
            keys: Page keys to scan (defaults to the selected pages)
            cancel_token: Stop flag
            on_progress: Called after each page with the running tally

        Returns:
            ScanResult with counts and per-page failure codes, keyed by the
            keys the scan started with
        """
        token = cancel_token or CancellationToken()
        ordered = sorted(session.selected_keys if keys is None else set(keys), key=parse_key)
        result = ScanResult(total=len(ordered))
        pdf_cache: Dict[int, fitz.Document] = {}

        targets: List[Tuple[str, Optional[DocumentHandle], int]] = []
        for key in ordered:
            document_index, page_number = parse_key(key)
            try:
                targets.append((key, session.get_document(document_index), page_number))
            except IndexError:
                targets.append((key, None, page_number))

        logger.info(f"Auto-scan of {len(ordered)} page(s) started for session {session.session_id}")

        try:
            for key, handle, page_number in targets:
                if token.cancelled:
                    result.cancelled = True
                    break

                if handle is None or session.current_key(handle, page_number) is None:
                    self._record_failure(result, key, "DOCUMENT_REMOVED")
                    result.processed += 1
                    if on_progress is not None:
                        on_progress(result)
                    continue

                image = await self._page_image(pdf_cache, handle, page_number)
                if token.cancelled:
                    result.cancelled = True
                    break

                current = session.current_key(handle, page_number)
                text = session.get_page_text(current) if current else ""

                try:
                    diagnosis = await asyncio.wait_for(
                        asyncio.to_thread(
                            self.llm_client.suggest_diagnosis,
                            image,
                            text,
                            handle.name,
                            page_number
                        ),
                        timeout=self.page_timeout
                    )
                except asyncio.TimeoutError:
                    self._record_failure(result, key, "TIMEOUT_ERROR")
                except LLMClientError as e:
                    self._record_failure(result, key, e.error.code)
                except Exception as e:
                    logger.error(f"Diagnosis suggestion failed for page {key}: {e}", exc_info=True)
                    self._record_failure(result, key, type(e).__name__)
                else:
                    if self._commit(session, handle, key, page_number, diagnosis, result) and diagnosis:
                        if self.on_diagnosis is not None:
                            await asyncio.to_thread(self.on_diagnosis, handle, page_number, diagnosis)

                result.processed += 1
                if on_progress is not None:
                    on_progress(result)
        finally:
            for pdf in pdf_cache.values():
                pdf.close()

        logger.info(
            f"Auto-scan finished: {result.succeeded} succeeded, {result.failed} failed, "
            f"{result.processed}/{result.total} processed"
            + (" (stopped)" if result.cancelled else "")
        )
        return result

    @staticmethod
    def _record_failure(result: ScanResult, key: str, code: str) -> None:
        logger.warning(f"Page {key} failed during auto-scan: {code}")
        result.failed += 1
        result.failures[key] = code

    @staticmethod
    def _commit(session: SessionState, handle: DocumentHandle, key: str, page_number: int,
                diagnosis: str, result: ScanResult) -> bool:
        # Re-key under the handle's index now; earlier removals may have shifted it
        current = session.current_key(handle, page_number)
        if current is None:
            DiagnosisScanner._record_failure(result, key, "DOCUMENT_REMOVED")
            return False

        if diagnosis:
            session.set_diagnosis(current, diagnosis)
        result.succeeded += 1
        return True
