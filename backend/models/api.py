"""API request and response models."""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from models.match import SearchMode
from services.text_extractor import OCRMode


class ChatMessage(BaseModel):
    """One turn of a conversation."""
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str


class SessionCreated(BaseModel):
    session_id: str


class DocumentInfo(BaseModel):
    index: int
    name: str
    page_count: Optional[int] = None
    file_id: Optional[str] = None
    error: Optional[str] = None


class MatchInfo(BaseModel):
    key: str
    document_index: int
    page_number: int
    matched_term: str
    occurrence_count: int
    source_document_name: str
    source: str


class SessionSummary(BaseModel):
    """Snapshot of a session's documents, matches and selection."""
    session_id: str
    documents: List[DocumentInfo]
    match_count: int
    selected: List[str] = Field(..., description="Selected page keys in output order")
    diagnoses: Dict[str, str]
    keywords: str
    suggested_keywords: str


class UploadResponse(BaseModel):
    documents: List[DocumentInfo]


class ExtractRequest(BaseModel):
    """Pages are merged by default; a re-scan (or an explicit document list) replaces them."""
    ocr_mode: OCRMode = OCRMode.AUTO
    document_indexes: Optional[List[int]] = None
    rescan: bool = False


class ExtractResponse(BaseModel):
    pages: Dict[int, int] = Field(..., description="Pages extracted per document index")
    ocr_pages: int
    errors: Dict[int, str]


class SearchRequest(BaseModel):
    terms: Optional[str] = Field(None, description="Comma-separated terms; defaults to the session keywords")
    mode: SearchMode = SearchMode.EXACT
    threshold: Optional[float] = Field(None, ge=0.0, le=1.0)


class DateSearchRequest(BaseModel):
    date: str = Field(..., min_length=1)


class SearchResponse(BaseModel):
    matches: List[MatchInfo]
    selected_count: int


class AnalyzeRequest(BaseModel):
    query: str = Field(..., min_length=1)
    model: Optional[str] = None
    selected_only: bool = False


class AnalyzeResponse(BaseModel):
    keys: List[str]
    reasons: Dict[str, str]
    keywords: List[str]
    selected_count: int


class AssistantRequest(BaseModel):
    messages: List[ChatMessage] = Field(..., min_length=1)
    model: Optional[str] = None


class AssistantResponse(BaseModel):
    message: str
    suggested_keywords: Optional[str] = None


class KeywordsRequest(BaseModel):
    keywords: str


class CategoryRequest(BaseModel):
    label: str = Field(..., min_length=1)
    terms: str = ""


class CategoryUpdate(BaseModel):
    terms: Optional[str] = None
    checked: Optional[bool] = None


class CategoryInfo(BaseModel):
    id: int
    label: str
    terms: str
    checked: bool


class ToggleRequest(BaseModel):
    key: str


class AddPageRequest(BaseModel):
    document_index: int = Field(..., ge=0)
    page_number: int = Field(..., ge=1)


class SelectionResponse(BaseModel):
    selected: List[str]


class DiagnosisRequest(BaseModel):
    text: str


class DiagnosisSuggestion(BaseModel):
    key: str
    diagnosis: str


class DiagnosisPageInfo(BaseModel):
    file_id: str
    file_name: str
    page_num: int
    key: str


class WorkspaceDiagnosisRequest(BaseModel):
    """Save the session's pages carrying `diagnosis_name` to the workspace."""
    session_id: str
    diagnosis_name: str = Field(..., min_length=1)
    user_id: Optional[str] = None


class WorkspaceDiagnosisInfo(BaseModel):
    id: str
    workspace_id: str
    diagnosis_name: str
    pages: List[DiagnosisPageInfo]
    page_count: int
    created_at: Optional[datetime] = None


class SelectedPageContent(BaseModel):
    file_name: str
    file_index: int
    page_num: int
    text: str
    diagnosis: Optional[str] = None
    image: Optional[str] = None


class AutoScanRequest(BaseModel):
    keys: Optional[List[str]] = None


class AutoScanStatus(BaseModel):
    running: bool
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    failures: Dict[str, str] = Field(default_factory=dict)


class ReportRequest(BaseModel):
    title: str = Field(..., min_length=1)
    sections: Dict[str, str]
    format: str = Field("docx", pattern="^(docx|pdf)$")


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    history: List[ChatMessage] = Field(default_factory=list)
    model: Optional[str] = None
    use_rag: bool = True
    include_diagnoses: bool = True


class TokenUsage(BaseModel):
    input: int
    output: int


class ChatReply(BaseModel):
    content: str
    provider: str
    model: str
    tokens: TokenUsage
    latency_ms: int
    rag_matches: int
