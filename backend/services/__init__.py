"""Services for the page triage backend."""
from .cancellation import CancellationToken
from .text_extractor import TextExtractor, TesseractOCR, OCRMode, DocumentParseError
from .search_engine import search, search_dates, NoDocumentsError
from .selection_state import SessionState
from .llm_client import LLMClient, ChatResponse, PageAnalysis, LLMError, LLMClientError
from .auto_scan import DiagnosisScanner, ScanResult
from .workspace_store import WorkspaceStore, WorkspaceStoreError
from .output_assembler import assemble_pages, build_report_docx, build_report_pdf, EmptySelectionError

__all__ = ['CancellationToken', 'TextExtractor', 'TesseractOCR', 'OCRMode', 'DocumentParseError', 'search', 'search_dates', 'NoDocumentsError', 'SessionState', 'LLMClient', 'ChatResponse', 'PageAnalysis', 'LLMError', 'LLMClientError', 'DiagnosisScanner', 'ScanResult', 'WorkspaceStore', 'WorkspaceStoreError', 'assemble_pages', 'build_report_docx', 'build_report_pdf', 'EmptySelectionError']
