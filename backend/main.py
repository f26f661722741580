"""Main entry point for the medical page triage API."""
import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from config import PORT, CORS_ORIGINS, FUZZY_THRESHOLD, LOG_FORMAT, LOG_LEVEL
from logger import setup_logging
from models.api import (
    AddPageRequest,
    AnalyzeRequest,
    AnalyzeResponse,
    AssistantRequest,
    AssistantResponse,
    AutoScanRequest,
    AutoScanStatus,
    CategoryInfo,
    CategoryRequest,
    CategoryUpdate,
    ChatReply,
    ChatRequest,
    DateSearchRequest,
    DiagnosisPageInfo,
    DiagnosisRequest,
    DiagnosisSuggestion,
    DocumentInfo,
    ExtractRequest,
    ExtractResponse,
    KeywordsRequest,
    MatchInfo,
    ReportRequest,
    SearchRequest,
    SearchResponse,
    SelectedPageContent,
    SelectionResponse,
    SessionCreated,
    SessionSummary,
    TokenUsage,
    ToggleRequest,
    UploadResponse,
    WorkspaceDiagnosisInfo,
    WorkspaceDiagnosisRequest,
)
from models.diagnosis import DiagnosisPage, WorkspaceDiagnosis
from models.document import DocumentHandle, PageText
from models.match import MatchRecord, make_key, parse_key
from services.auto_scan import DiagnosisScanner, ScanResult
from services.cancellation import CancellationToken
from services.context_builder import (
    build_chat_messages,
    build_pdf_content,
    build_selected_content,
    format_diagnosis_context,
    format_rag_context,
)
from services.llm_client import LLMClient, LLMClientError
from services.output_assembler import (
    EmptySelectionError,
    assemble_pages,
    build_report_docx,
    build_report_pdf,
)
from services.search_engine import NoDocumentsError, parse_terms
from services.selection_state import SessionState
from services.text_extractor import DocumentParseError, TextExtractor
from services.workspace_store import WorkspaceStore, WorkspaceStoreError

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Medical Page Triage",
    description="Find, select and extract relevant pages across medical record PDFs",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services (will be done on startup)
llm_client: Optional[LLMClient] = None
text_extractor: Optional[TextExtractor] = None
workspace_store: Optional[WorkspaceStore] = None
diagnosis_scanner: Optional[DiagnosisScanner] = None

# In-memory session registry
sessions: Dict[str, SessionState] = {}
scan_tokens: Dict[str, CancellationToken] = {}
scan_results: Dict[str, ScanResult] = {}


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global llm_client, text_extractor, workspace_store, diagnosis_scanner

    if LOG_FORMAT == "json":
        setup_logging(LOG_LEVEL)

    logger.info("Initializing page triage services...")

    text_extractor = TextExtractor()
    logger.info("Initialized TextExtractor")

    try:
        llm_client = LLMClient()
        diagnosis_scanner = DiagnosisScanner(
            llm_client, text_extractor, on_diagnosis=_persist_page_diagnosis
        )
        logger.info("Initialized LLMClient and DiagnosisScanner")
    except ValueError as e:
        logger.warning(f"AI features disabled: {e}")

    try:
        workspace_store = WorkspaceStore()
        logger.info("Initialized WorkspaceStore")
    except ValueError as e:
        logger.warning(f"Workspace persistence disabled: {e}")

    logger.info("Services initialized")


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _get_session(session_id: str) -> SessionState:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


def _require_llm() -> LLMClient:
    if llm_client is None:
        raise HTTPException(status_code=503, detail="AI service is not configured")
    return llm_client


def _llm_http_error(e: LLMClientError) -> HTTPException:
    """Map a structured AI client error to an HTTP error."""
    logger.error(f"LLM client error: {e.error.message}")
    if e.error.code == "RATE_LIMIT_ERROR":
        status_code = 429
    elif e.error.code == "QUOTA_EXHAUSTED":
        status_code = 402
    else:
        status_code = 503
    return HTTPException(
        status_code=status_code,
        detail={
            "error": {
                "code": e.error.code,
                "message": e.error.message,
                "details": e.error.details
            }
        }
    )


def _document_info(handle: DocumentHandle) -> DocumentInfo:
    return DocumentInfo(
        index=handle.index,
        name=handle.name,
        page_count=handle.page_count,
        file_id=handle.file_id,
        error=handle.error
    )


def _match_info(match: MatchRecord) -> MatchInfo:
    return MatchInfo(
        key=match.key,
        document_index=match.document_index,
        page_number=match.page_number,
        matched_term=match.matched_term,
        occurrence_count=match.occurrence_count,
        source_document_name=match.source_document_name,
        source=match.source.value
    )


def _ordered_selection(session: SessionState) -> List[str]:
    return [
        make_key(document_index, page_number)
        for document_index, pages in session.selected_pages_grouped()
        for page_number in pages
    ]


def _check_key(session: SessionState, key: str) -> str:
    try:
        document_index, page_number = parse_key(key)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not session.page_exists(document_index, page_number):
        raise HTTPException(status_code=404, detail=f"Page {key} is not loaded")
    return key


def _require_store() -> WorkspaceStore:
    if workspace_store is None:
        raise HTTPException(status_code=503, detail="Workspace storage is not configured")
    return workspace_store


def _persist_page_diagnosis(handle: DocumentHandle, page_number: int, text: str) -> None:
    """Store a page diagnosis for documents that have a stored copy."""
    if workspace_store is None or not handle.file_id:
        return
    try:
        workspace_store.save_page_diagnosis(handle.file_id, page_number, text)
    except WorkspaceStoreError as e:
        logger.error(f"Diagnosis for {handle.name} page {page_number} not persisted: {e}")


def _workspace_diagnosis_info(diagnosis: WorkspaceDiagnosis) -> WorkspaceDiagnosisInfo:
    return WorkspaceDiagnosisInfo(
        id=diagnosis.id,
        workspace_id=diagnosis.workspace_id,
        diagnosis_name=diagnosis.diagnosis_name,
        pages=[
            DiagnosisPageInfo(
                file_id=page.file_id,
                file_name=page.file_name,
                page_num=page.page_num,
                key=page.key
            )
            for page in diagnosis.pages
        ],
        page_count=diagnosis.page_count,
        created_at=diagnosis.created_at
    )


# ----------------------------------------------------------------------
# Health and sessions
# ----------------------------------------------------------------------

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Medical Page Triage API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "medical-page-triage",
        "version": "1.0.0",
        "ai_enabled": llm_client is not None,
        "storage_enabled": workspace_store is not None
    }


@app.post("/sessions", response_model=SessionCreated, status_code=201)
async def create_session() -> SessionCreated:
    session = SessionState()
    if workspace_store is not None:
        stored = workspace_store.load_search_categories()
        if stored:
            session.categories = stored
    sessions[session.session_id] = session
    logger.info(f"Created session {session.session_id}")
    return SessionCreated(session_id=session.session_id)


@app.get("/sessions/{session_id}", response_model=SessionSummary)
def get_session(session_id: str) -> SessionSummary:
    session = _get_session(session_id)
    return SessionSummary(
        session_id=session.session_id,
        documents=[_document_info(d) for d in list(session.documents)],
        match_count=len(session.matches),
        selected=_ordered_selection(session),
        diagnoses=dict(session.diagnoses),
        keywords=session.keywords,
        suggested_keywords=session.suggested_keywords
    )


@app.delete("/sessions/{session_id}", status_code=204)
def delete_session(session_id: str):
    _get_session(session_id)
    token = scan_tokens.pop(session_id, None)
    if token is not None:
        token.cancel()
    scan_results.pop(session_id, None)
    del sessions[session_id]
    return Response(status_code=204)


# ----------------------------------------------------------------------
# Documents
# ----------------------------------------------------------------------

@app.post("/sessions/{session_id}/documents", response_model=UploadResponse)
async def upload_documents(
    session_id: str,
    files: List[UploadFile] = File(...),
    workspace_id: Optional[str] = Form(None),
    user_id: Optional[str] = Form(None)
) -> UploadResponse:
    """
    Add one or more PDFs to the session.

    Files are appended in upload order; existing documents, matches and
    selections are left as they are. When a workspace and user are given and
    storage is configured, each file is also uploaded to the workspace.
    """
    session = _get_session(session_id)

    for upload in files:
        name = upload.filename or "document.pdf"
        if upload.content_type != "application/pdf" and not name.lower().endswith(".pdf"):
            raise HTTPException(status_code=400, detail=f"{name} is not a PDF file")

    added = []
    for upload in files:
        name = upload.filename or "document.pdf"
        data = await upload.read()
        file_id = file_path = None

        if workspace_store is not None and workspace_id and user_id:
            try:
                row = workspace_store.upload_document(user_id, workspace_id, name, data)
                file_id, file_path = row.get("id"), row.get("file_path")
            except WorkspaceStoreError as e:
                # The session copy is still usable without the stored one
                logger.error(f"Continuing without stored copy of {name}: {e}")

        added.append(session.add_document(name, data, file_id=file_id, file_path=file_path))

    return UploadResponse(documents=[_document_info(handle) for handle in added])


@app.post("/sessions/{session_id}/workspaces/{workspace_id}/load", response_model=UploadResponse)
def load_workspace(session_id: str, workspace_id: str) -> UploadResponse:
    """
    Add a workspace's stored PDFs to the session.

    Files already loaded (same file id) are skipped; a file that cannot be
    downloaded is logged and skipped.
    """
    session = _get_session(session_id)
    store = _require_store()

    try:
        rows = store.list_files(workspace_id)
    except WorkspaceStoreError as e:
        raise HTTPException(status_code=502, detail=str(e))

    loaded = {d.file_id for d in list(session.documents) if d.file_id}
    added = []
    for row in rows:
        if row.get("id") in loaded:
            continue
        try:
            data = store.download_document(row["file_path"])
        except WorkspaceStoreError as e:
            logger.error(f"Skipping stored file {row.get('file_name')}: {e}")
            continue
        added.append(session.add_document(
            row.get("file_name") or "document.pdf",
            data,
            file_id=row.get("id"),
            file_path=row["file_path"]
        ))

    logger.info(f"Loaded {len(added)} file(s) from workspace {workspace_id} into session {session_id}")
    return UploadResponse(documents=[_document_info(handle) for handle in added])


@app.post("/sessions/{session_id}/extract", response_model=ExtractResponse)
async def extract_documents(session_id: str, request: ExtractRequest) -> ExtractResponse:
    """
    Extract page text for the session's documents.

    A plain extraction merges each page as it finishes and never overwrites
    text already held. A re-scan, or an extraction limited to given
    documents, replaces those documents' text once each one is done, so a
    manual OCR pass takes effect.
    """
    session = _get_session(session_id)

    documents = list(session.documents)
    if request.document_indexes is not None:
        wanted = set(request.document_indexes)
        documents = [d for d in documents if d.index in wanted]
    if not documents:
        raise HTTPException(status_code=400, detail="No documents to extract")

    replace = request.rescan or request.document_indexes is not None
    results = await text_extractor.extract_all(
        documents,
        ocr_mode=request.ocr_mode,
        on_page=None if replace else session.add_extracted_page
    )

    pages: Dict[int, int] = {}
    ocr_pages = 0
    for handle, records in results:
        if replace:
            kept = session.replace_page_texts(handle, records)
        else:
            kept = session.contains(handle)
        if not kept:
            continue

        pages[handle.index] = len(records)
        ocr_pages += sum(1 for r in records if r.ocr_applied)
        _persist_page_texts(handle, records)

    return ExtractResponse(
        pages=pages,
        ocr_pages=ocr_pages,
        errors={d.index: d.error for d in documents if d.error and session.contains(d)}
    )


def _persist_page_texts(handle: DocumentHandle, records: List[PageText]) -> None:
    if workspace_store is None or not handle.file_id or not records:
        return
    try:
        workspace_store.save_page_texts(handle.file_id, records)
    except WorkspaceStoreError as e:
        logger.error(f"Page text for {handle.name} not persisted: {e}")


@app.delete("/sessions/{session_id}/documents/{document_index}", response_model=SessionSummary)
def remove_document(session_id: str, document_index: int) -> SessionSummary:
    """Remove a document from the session, and its stored copy if it has one."""
    session = _get_session(session_id)
    try:
        handle = session.remove_document(document_index)
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if workspace_store is not None and handle.file_id and handle.file_path:
        try:
            workspace_store.delete_document(handle.file_id, handle.file_path)
        except WorkspaceStoreError as e:
            logger.error(f"Stored copy of {handle.name} not deleted: {e}")

    return get_session(session_id)


@app.get("/sessions/{session_id}/documents/{document_index}/matches", response_model=List[MatchInfo])
def document_matches(session_id: str, document_index: int) -> List[MatchInfo]:
    session = _get_session(session_id)
    try:
        session.get_document(document_index)
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [_match_info(m) for m in session.matches_for_document(document_index)]


@app.delete("/sessions/{session_id}/documents", response_model=SessionSummary)
def remove_all_documents(session_id: str) -> SessionSummary:
    session = _get_session(session_id)
    session.remove_all_documents()
    return get_session(session_id)


@app.get("/sessions/{session_id}/output.pdf")
def download_output(session_id: str):
    """Download the selected pages as one PDF."""
    session = _get_session(session_id)
    try:
        data = assemble_pages(session)
    except EmptySelectionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": 'attachment; filename="extracted-pages.pdf"'}
    )


# ----------------------------------------------------------------------
# Search
# ----------------------------------------------------------------------

@app.post("/sessions/{session_id}/search", response_model=SearchResponse)
def keyword_search(session_id: str, request: SearchRequest) -> SearchResponse:
    """Search all documents and add matching pages to the selection."""
    session = _get_session(session_id)
    if request.terms is not None:
        session.set_keywords(request.terms)

    terms = session.search_terms
    if not terms:
        raise HTTPException(status_code=400, detail="Enter at least one search term")

    threshold = request.threshold if request.threshold is not None else FUZZY_THRESHOLD
    try:
        found = session.apply_search(terms, request.mode, threshold)
    except NoDocumentsError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return SearchResponse(
        matches=[_match_info(m) for m in found],
        selected_count=len(session.selected_keys)
    )


@app.post("/sessions/{session_id}/search/date", response_model=SearchResponse)
def date_search(session_id: str, request: DateSearchRequest) -> SearchResponse:
    session = _get_session(session_id)
    try:
        found = session.apply_date_search(request.date)
    except NoDocumentsError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SearchResponse(
        matches=[_match_info(m) for m in found],
        selected_count=len(session.selected_keys)
    )


@app.post("/sessions/{session_id}/analyze", response_model=AnalyzeResponse)
def analyze_pages(session_id: str, request: AnalyzeRequest) -> AnalyzeResponse:
    """Ask the AI which pages answer a query and add them to the selection."""
    session = _get_session(session_id)
    client = _require_llm()

    if not session.documents:
        raise HTTPException(status_code=400, detail="Load at least one document before searching")
    pdf_content = build_pdf_content(session, selected_only=request.selected_only)
    if not pdf_content:
        raise HTTPException(status_code=400, detail="No extracted text to analyze")

    try:
        analysis = client.analyze_pages(request.query, pdf_content, model=request.model)
    except LLMClientError as e:
        raise _llm_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    keys = session.add_ai_pages(analysis.relevant_pages, query=request.query)
    if analysis.keywords:
        session.suggest_keywords(", ".join(analysis.keywords))

    return AnalyzeResponse(
        keys=keys,
        reasons={key: session.ai_reasons[key] for key in keys if key in session.ai_reasons},
        keywords=analysis.keywords,
        selected_count=len(session.selected_keys)
    )


@app.post("/sessions/{session_id}/assistant", response_model=AssistantResponse)
def search_assistant(session_id: str, request: AssistantRequest) -> AssistantResponse:
    """Converse with the search assistant; suggested keywords are kept on the session."""
    session = _get_session(session_id)
    client = _require_llm()

    try:
        message, keywords = client.suggest_keywords(
            [m.model_dump() for m in request.messages], model=request.model
        )
    except LLMClientError as e:
        raise _llm_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if keywords:
        session.suggest_keywords(keywords)
    return AssistantResponse(message=message, suggested_keywords=keywords)


@app.put("/sessions/{session_id}/keywords")
def set_keywords(session_id: str, request: KeywordsRequest):
    session = _get_session(session_id)
    session.set_keywords(request.keywords)
    return {"keywords": session.keywords, "terms": parse_terms(session.keywords)}


@app.post("/sessions/{session_id}/keywords/apply-suggested")
def apply_suggested_keywords(session_id: str):
    session = _get_session(session_id)
    return {"keywords": session.apply_suggested_keywords()}


@app.get("/sessions/{session_id}/categories", response_model=List[CategoryInfo])
def list_categories(session_id: str) -> List[CategoryInfo]:
    session = _get_session(session_id)
    return [CategoryInfo(id=c.id, label=c.label, terms=c.terms, checked=c.checked) for c in session.categories]


@app.post("/sessions/{session_id}/categories", response_model=CategoryInfo, status_code=201)
def add_category(session_id: str, request: CategoryRequest) -> CategoryInfo:
    session = _get_session(session_id)
    category = session.add_category(request.label, request.terms)
    _persist_categories(session)
    return CategoryInfo(id=category.id, label=category.label, terms=category.terms, checked=category.checked)


@app.patch("/sessions/{session_id}/categories/{category_id}", response_model=CategoryInfo)
def update_category(session_id: str, category_id: int, request: CategoryUpdate) -> CategoryInfo:
    """Edit a category's terms and/or check it, which merges its terms into the keywords."""
    session = _get_session(session_id)
    try:
        if request.terms is not None:
            session.set_category_terms(category_id, request.terms)
            _persist_categories(session)
        if request.checked is not None:
            session.toggle_category(category_id, request.checked)
        category = session.get_category(category_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return CategoryInfo(id=category.id, label=category.label, terms=category.terms, checked=category.checked)


def _persist_categories(session: SessionState) -> None:
    if workspace_store is None:
        return
    try:
        workspace_store.save_search_categories(session.categories)
    except WorkspaceStoreError as e:
        logger.error(f"Search categories not persisted: {e}")


# ----------------------------------------------------------------------
# Selection
# ----------------------------------------------------------------------

@app.post("/sessions/{session_id}/selection/toggle", response_model=SelectionResponse)
def toggle_selection(session_id: str, request: ToggleRequest) -> SelectionResponse:
    session = _get_session(session_id)
    session.toggle_selection(_check_key(session, request.key))
    return SelectionResponse(selected=_ordered_selection(session))


@app.post("/sessions/{session_id}/selection/pages", response_model=SelectionResponse)
def add_page(session_id: str, request: AddPageRequest) -> SelectionResponse:
    session = _get_session(session_id)
    try:
        session.add_page(request.document_index, request.page_number)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return SelectionResponse(selected=_ordered_selection(session))


@app.post("/sessions/{session_id}/selection/select-all", response_model=SelectionResponse)
def select_all(session_id: str) -> SelectionResponse:
    session = _get_session(session_id)
    session.select_all()
    return SelectionResponse(selected=_ordered_selection(session))


@app.post("/sessions/{session_id}/selection/deselect-all", response_model=SelectionResponse)
def deselect_all(session_id: str) -> SelectionResponse:
    session = _get_session(session_id)
    session.deselect_all()
    return SelectionResponse(selected=[])


@app.get("/sessions/{session_id}/selection/content", response_model=List[SelectedPageContent])
async def selected_content(session_id: str, include_images: bool = False) -> List[SelectedPageContent]:
    """Selected pages in output order with their text, diagnosis and optionally a screenshot."""
    session = _get_session(session_id)

    images: Dict[str, str] = {}
    if include_images:
        for document_index, page_numbers in session.selected_pages_grouped():
            handle = session.get_document(document_index)
            try:
                pdf = await asyncio.to_thread(text_extractor.open_document, handle)
            except DocumentParseError as e:
                logger.warning(f"No screenshots for {handle.name}: {e}")
                continue
            try:
                for page_number in page_numbers:
                    images[make_key(document_index, page_number)] = await asyncio.to_thread(
                        text_extractor.page_image_data_url, pdf, page_number
                    )
            finally:
                pdf.close()

    return [
        SelectedPageContent(
            file_name=page["fileName"],
            file_index=page["fileIndex"],
            page_num=page["pageNum"],
            text=page["text"],
            diagnosis=page["diagnosis"],
            image=page["image"]
        )
        for page in build_selected_content(session, images)
    ]


# ----------------------------------------------------------------------
# Diagnoses
# ----------------------------------------------------------------------

@app.put("/sessions/{session_id}/diagnoses/{key}")
def set_diagnosis(session_id: str, key: str, request: DiagnosisRequest):
    session = _get_session(session_id)
    session.set_diagnosis(_check_key(session, key), request.text)

    document_index, page_number = parse_key(key)
    if request.text.strip():
        _persist_page_diagnosis(session.get_document(document_index), page_number, request.text.strip())
    return {"key": key, "diagnosis": session.diagnoses.get(key)}


@app.delete("/sessions/{session_id}/diagnoses/{key}", status_code=204)
def clear_diagnosis(session_id: str, key: str):
    session = _get_session(session_id)
    session.clear_diagnosis(key)
    return Response(status_code=204)


@app.post("/sessions/{session_id}/diagnoses/{key}/suggest", response_model=DiagnosisSuggestion)
async def suggest_diagnosis(session_id: str, key: str) -> DiagnosisSuggestion:
    """Suggest a diagnosis for one page and store it."""
    session = _get_session(session_id)
    _require_llm()
    _check_key(session, key)

    result = await diagnosis_scanner.scan(session, keys=[key])
    if result.failed:
        code = result.failures.get(key, "UNKNOWN_ERROR")
        status_code = {"RATE_LIMIT_ERROR": 429, "QUOTA_EXHAUSTED": 402}.get(code, 503)
        raise HTTPException(status_code=status_code, detail={"error": {"code": code}})

    return DiagnosisSuggestion(key=key, diagnosis=session.diagnoses.get(key, ""))


@app.post("/sessions/{session_id}/auto-scan", response_model=AutoScanStatus, status_code=202)
def start_auto_scan(
    session_id: str,
    request: AutoScanRequest,
    background_tasks: BackgroundTasks
) -> AutoScanStatus:
    """Start suggesting diagnoses for the selected (or given) pages in the background."""
    session = _get_session(session_id)
    _require_llm()

    if session_id in scan_tokens:
        raise HTTPException(status_code=409, detail="Auto-scan already running")

    keys = request.keys if request.keys is not None else sorted(session.selected_keys, key=parse_key)
    for key in keys:
        _check_key(session, key)
    if not keys:
        raise HTTPException(status_code=400, detail="Select at least one page to scan")

    token = CancellationToken()
    scan_tokens[session_id] = token
    scan_results[session_id] = ScanResult(total=len(keys))
    background_tasks.add_task(_run_auto_scan, session, keys, token)
    return AutoScanStatus(running=True, total=len(keys))


async def _run_auto_scan(session: SessionState, keys: List[str], token: CancellationToken) -> None:
    def publish(result: ScanResult) -> None:
        scan_results[session.session_id] = result

    try:
        result = await diagnosis_scanner.scan(session, keys, token, on_progress=publish)
        publish(result)
    except Exception as e:
        logger.error(f"Auto-scan for session {session.session_id} aborted: {e}", exc_info=True)
    finally:
        if scan_tokens.get(session.session_id) is token:
            del scan_tokens[session.session_id]


@app.get("/sessions/{session_id}/auto-scan", response_model=AutoScanStatus)
def auto_scan_status(session_id: str) -> AutoScanStatus:
    _get_session(session_id)
    result = scan_results.get(session_id)
    if result is None:
        return AutoScanStatus(running=False)
    return AutoScanStatus(
        running=session_id in scan_tokens,
        total=result.total,
        processed=result.processed,
        succeeded=result.succeeded,
        failed=result.failed,
        cancelled=result.cancelled,
        failures=dict(result.failures)
    )


@app.post("/sessions/{session_id}/auto-scan/stop", response_model=AutoScanStatus)
def stop_auto_scan(session_id: str) -> AutoScanStatus:
    """Ask a running scan to stop after the page in flight."""
    _get_session(session_id)
    token = scan_tokens.get(session_id)
    if token is not None:
        token.cancel()
        logger.info(f"Stop requested for auto-scan of session {session_id}")
    return auto_scan_status(session_id)


# ----------------------------------------------------------------------
# Workspace diagnoses
# ----------------------------------------------------------------------

@app.post(
    "/workspaces/{workspace_id}/diagnoses",
    response_model=WorkspaceDiagnosisInfo,
    status_code=201
)
def save_workspace_diagnosis(workspace_id: str, request: WorkspaceDiagnosisRequest) -> WorkspaceDiagnosisInfo:
    """
    Save a session diagnosis and its pages to the workspace.

    Only pages of stored documents can be referenced; the store merges them
    into an existing diagnosis of the same name.
    """
    store = _require_store()
    session = _get_session(request.session_id)

    keys = session.diagnosis_groups().get(request.diagnosis_name.strip(), [])
    pages = []
    for key in keys:
        document_index, page_number = parse_key(key)
        handle = session.get_document(document_index)
        if handle.file_id:
            pages.append(DiagnosisPage(
                file_id=handle.file_id,
                file_name=handle.name,
                page_num=page_number,
                key=key
            ))
    if not pages:
        raise HTTPException(
            status_code=400,
            detail=f"No stored pages carry the diagnosis {request.diagnosis_name!r}"
        )

    try:
        diagnosis = store.save_diagnosis(workspace_id, request.diagnosis_name.strip(), pages, request.user_id)
    except WorkspaceStoreError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return _workspace_diagnosis_info(diagnosis)


@app.get("/workspaces/{workspace_id}/diagnoses", response_model=List[WorkspaceDiagnosisInfo])
def list_workspace_diagnoses(workspace_id: str) -> List[WorkspaceDiagnosisInfo]:
    store = _require_store()
    try:
        diagnoses = store.list_diagnoses(workspace_id)
    except WorkspaceStoreError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [_workspace_diagnosis_info(d) for d in diagnoses]


@app.delete("/workspaces/{workspace_id}/diagnoses/{diagnosis_id}", status_code=204)
def delete_workspace_diagnosis(workspace_id: str, diagnosis_id: str):
    store = _require_store()
    try:
        store.delete_diagnosis(diagnosis_id)
    except WorkspaceStoreError as e:
        raise HTTPException(status_code=502, detail=str(e))
    logger.info(f"Deleted diagnosis {diagnosis_id} from workspace {workspace_id}")
    return Response(status_code=204)


# ----------------------------------------------------------------------
# Reports and chat
# ----------------------------------------------------------------------

@app.post("/sessions/{session_id}/report")
def render_report(session_id: str, request: ReportRequest):
    """Render generated report text as DOCX or PDF."""
    _get_session(session_id)
    if request.format == "pdf":
        data = build_report_pdf(request.title, request.sections)
        media_type = "application/pdf"
    else:
        data = build_report_docx(request.title, request.sections)
        media_type = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    return Response(
        content=data,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="report.{request.format}"'}
    )


@app.post("/sessions/{session_id}/chat", response_model=ChatReply)
def chat(session_id: str, request: ChatRequest) -> ChatReply:
    """
    Chat about the loaded documents.

    Vector-search context for the stored documents and the session's
    diagnoses (with their page text) are prefixed to the new message.
    """
    session = _get_session(session_id)
    client = _require_llm()

    rag_matches = []
    if request.use_rag and workspace_store is not None:
        file_ids = [d.file_id for d in list(session.documents) if d.file_id]
        rag_matches = workspace_store.rag_search(request.message, file_ids, limit=10)

    diagnosis_context = format_diagnosis_context(session) if request.include_diagnoses else ""

    try:
        messages = build_chat_messages(
            [m.model_dump() for m in request.history],
            request.message,
            rag_context=format_rag_context(rag_matches),
            diagnosis_context=diagnosis_context
        )
        response = client.chat(messages, model=request.model)
    except LLMClientError as e:
        raise _llm_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return ChatReply(
        content=response.content,
        provider=response.provider,
        model=response.model,
        tokens=TokenUsage(input=response.tokens_input, output=response.tokens_output),
        latency_ms=response.latency_ms,
        rag_matches=len(rag_matches)
    )


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting Medical Page Triage API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
